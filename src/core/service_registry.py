"""
Service Registry - process-wide lookup for the security core services.

The web layer resolves the engine, MFA enforcer, lockout manager and audit
logger through this registry so tests can swap in instances wired against
in-memory stores and fixed clocks.

Usage:
    from core.service_registry import services

    # App startup
    services.register("security_core", build_security_core(settings))

    # Lazy
    services.register_factory("audit_logger", lambda: AuditLogger())

    # In tests (via conftest.py fixture)
    services.reset_all()
"""

import logging
import threading
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class ServiceRegistry:
    """
    Thread-safe registry of named service instances and lazy factories.

    A factory runs at most once; its result is cached until reset.
    """

    def __init__(self):
        self._services: Dict[str, Any] = {}
        self._factories: Dict[str, Callable[[], Any]] = {}
        self._lock = threading.RLock()

    def register(self, name: str, instance: Any) -> None:
        with self._lock:
            self._services[name] = instance
        logger.debug(f"Service registered: {name}")

    def register_factory(self, name: str, factory: Callable[[], Any]) -> None:
        """Register a callable that builds the service on first ``get``."""
        with self._lock:
            self._factories[name] = factory
        logger.debug(f"Service factory registered: {name}")

    def get(self, name: str, default: Any = None) -> Any:
        """
        Retrieve a registered service.

        Args:
            name: Service identifier, e.g. "security_core"
            default: Returned when neither an instance nor a factory exists
        """
        with self._lock:
            if name in self._services:
                return self._services[name]

            factory = self._factories.get(name)
            if factory is None:
                return default
            instance = factory()
            self._services[name] = instance
            return instance

    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._services or name in self._factories

    def reset(self, name: str) -> None:
        """Drop the cached instance; a registered factory rebuilds it on next get()."""
        with self._lock:
            self._services.pop(name, None)
        logger.debug(f"Service reset: {name}")

    def reset_all(self) -> None:
        """Drop every cached instance. Factories are kept."""
        with self._lock:
            self._services.clear()
        logger.debug("All services reset")

    def unregister(self, name: str) -> None:
        with self._lock:
            self._services.pop(name, None)
            self._factories.pop(name, None)

    @property
    def registered_names(self) -> List[str]:
        with self._lock:
            return sorted(set(self._services) | set(self._factories))


# Global singleton registry
services = ServiceRegistry()
