"""Shared helpers for the test suite: a controllable clock, user factory and code helpers."""

from datetime import datetime, timedelta

from rbac.models import UserAccount
from security.passwords import hash_password
from security.totp import TOTPGenerator, utc_timestamp

TEST_PASSWORD = "Lodge#Secure2024"
TEST_JWT_SECRET = "test-jwt-secret-0123456789abcdef0123456789"

EPOCH = datetime(1970, 1, 1)


class FakeClock:
    """Mutable wall clock shared by every component of a test core."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return (self.now - EPOCH).total_seconds()

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


async def no_sleep(seconds: float) -> None:
    """Stand-in for asyncio.sleep so slow-down never blocks a test."""
    return None


def totp_now(secret: str, clock: FakeClock) -> str:
    return TOTPGenerator.get_totp_code(secret, at=utc_timestamp(clock.now))


def wrong_code(secret: str, clock: FakeClock, window: int = 2) -> str:
    """A six digit code guaranteed to fall outside the accepted window."""
    accepted = {
        TOTPGenerator.get_totp_code(secret, offset, at=utc_timestamp(clock.now))
        for offset in range(-window, window + 1)
    }
    for candidate in ("000000", "111111", "222222", "333333", "444444", "555555", "666666"):
        if candidate not in accepted:
            return candidate
    raise AssertionError("no rejected code found")


def add_user(
    core,
    user_id: str,
    role: str = None,
    state_id: str = None,
    campus_id: str = None,
    email: str = None,
    password: str = TEST_PASSWORD,
    **extra,
) -> UserAccount:
    user = UserAccount(
        user_id=user_id,
        email=email or f"{user_id}@lodge.test",
        full_name=user_id.replace("_", " ").title(),
        role_names=[role] if role else [],
        primary_role=role,
        state_id=state_id,
        campus_id=campus_id,
        password_hash=hash_password(password, rounds=4),
        **extra,
    )
    return core.store.save_user(user)


def enroll_authenticator(core, user_id: str, clock: FakeClock, session_id: str = None) -> dict:
    """Set up and verify an authenticator app; returns the setup data."""
    setup = core.mfa.setup_device(user_id, "authenticator_app", "Phone")
    assert setup.success, setup.message
    result = core.mfa.verify_setup(
        setup.data["device_id"], totp_now(setup.data["secret"], clock), user_id=user_id, session_id=session_id
    )
    assert result.success, result.message
    return setup.data


class StringRedis:
    """
    Dict-backed stand-in for a ``decode_responses=True`` Redis client.

    Values are stored and returned as str, so anything that is not plain
    text fails the way it would against a real server.
    """

    def __init__(self):
        self.data = {}
        self.published = []

    def get(self, key):
        return self.data.get(key)

    def setex(self, key, ttl, value):
        if not isinstance(value, str):
            raise TypeError(f"value for {key} is not text")
        self.data[key] = value
        return True

    def scan_iter(self, match=None):
        prefix = (match or "*").rstrip("*")
        return iter([k for k in list(self.data) if k.startswith(prefix)])

    def delete(self, *keys):
        return sum(1 for key in keys if self.data.pop(key, None) is not None)

    def publish(self, channel, message):
        self.published.append((channel, message))
        return 0
