"""
Core Module - wiring and lifecycle for the security services.

This module provides:
- A thread-safe service registry
- ``build_security_core`` to assemble every component from Settings
"""

from .service_registry import ServiceRegistry, services
from .container import SecurityCore, build_security_core, connect_redis, get_security_core

__all__ = [
    "ServiceRegistry",
    "services",
    "SecurityCore",
    "build_security_core",
    "connect_redis",
    "get_security_core",
]
