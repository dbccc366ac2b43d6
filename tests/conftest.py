"""Pytest configuration and fixtures for test suite."""

import os
import sys
from datetime import datetime
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Set test environment BEFORE any other imports
# The audit module reads its signing key at import time
os.environ.setdefault("APP_ENVIRONMENT", "test")
os.environ.setdefault("AUDIT_HMAC_KEY", "test-audit-hmac-key-0123456789abcdef0123")

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from config.settings import SecuritySettings, Settings  # noqa: E402
from core.container import build_security_core  # noqa: E402
from support import TEST_JWT_SECRET, FakeClock, add_user  # noqa: E402


# =============================================================================
# CORE FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    """Wednesday 2024-03-13 10:00 UTC."""
    return FakeClock(datetime(2024, 3, 13, 10, 0, 0))


@pytest.fixture
def security_settings():
    return SecuritySettings(
        jwt_secret=TEST_JWT_SECRET,
        store_backend="memory",
        rate_limit_backend="memory",
        audit_db_path=None,
        # TestClient connects as "testclient"; X-Forwarded-For sets the client IP
        trusted_proxies=["testclient", "127.0.0.1", "::1"],
    )


@pytest.fixture
def core(clock, security_settings):
    """Security core on in-memory backends, seeded with the system roles."""
    built = build_security_core(
        Settings(environment="test"),
        security=security_settings,
        clock=clock,
        monotonic=clock.monotonic,
    )
    yield built
    built.shutdown()


@pytest.fixture
def users(core):
    """One user per system role. Lagos (LA) state, campus UNILAG."""
    return {
        "super": add_user(core, "super", "super_admin"),
        "national": add_user(core, "national", "national_admin"),
        "state": add_user(core, "state", "state_admin", state_id="LA"),
        "mclo": add_user(core, "mclo", "mclo_admin", state_id="LA", campus_id="UNILAG"),
        "treasurer": add_user(core, "treasurer", "finance_treasurer"),
        "member": add_user(core, "member", "member", state_id="LA", campus_id="UNILAG"),
        "auditor": add_user(core, "auditor", "auditor"),
    }


@pytest.fixture
def mock_redis_client():
    """Provide a mock sync Redis client for testing."""
    client = MagicMock()
    client.get.return_value = None
    client.set.return_value = True
    client.delete.return_value = 1
    client.exists.return_value = 0
    client.scan_iter.return_value = iter([])
    return client


@pytest.fixture(autouse=True)
def _reset_service_registry():
    """Drop cached services between tests."""
    yield
    from core.service_registry import services
    services.reset_all()
