"""
MFA Device model and its state machine.

States:
    Unverified --(first valid code)--> Active
    Active --(5th consecutive failure)--> Locked{until}
    Locked --(lock window elapses / admin unlock)--> Active
    any --(deactivate)--> Deactivated

Locks are self-clearing: ``DeviceState.current(now)`` returns the state
after any elapsed lock window, so no job is needed to lift them.
Transition functions are pure and raise InvalidTransition on misuse.
"""

import hmac
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from .totp import TOTPGenerator, generate_backup_codes, hash_backup_code, utc_timestamp


class DeviceType(str, Enum):
    """Second factor delivery channel."""
    AUTHENTICATOR_APP = "authenticator_app"
    SMS = "sms"
    EMAIL = "email"
    HARDWARE_TOKEN = "hardware_token"


class DeviceStatus(str, Enum):
    UNVERIFIED = "unverified"
    ACTIVE = "active"
    LOCKED = "locked"
    DEACTIVATED = "deactivated"


class InvalidTransition(Exception):
    """A transition was requested from a state that does not allow it."""


@dataclass(frozen=True)
class LockPolicy:
    max_failed_attempts: int = 5
    lock_duration: timedelta = timedelta(minutes=30)


# =============================================================================
# STATE
# =============================================================================

@dataclass(frozen=True)
class DeviceState:
    """Tagged device state. ``verified`` survives a lock so unlock can restore it."""
    status: DeviceStatus
    locked_until: Optional[datetime] = None
    verified: bool = False

    @classmethod
    def unverified(cls) -> "DeviceState":
        return cls(DeviceStatus.UNVERIFIED)

    @classmethod
    def active(cls) -> "DeviceState":
        return cls(DeviceStatus.ACTIVE, verified=True)

    @classmethod
    def locked(cls, until: datetime, verified: bool) -> "DeviceState":
        return cls(DeviceStatus.LOCKED, locked_until=until, verified=verified)

    @classmethod
    def deactivated(cls, verified: bool) -> "DeviceState":
        return cls(DeviceStatus.DEACTIVATED, verified=verified)

    def current(self, now: datetime) -> "DeviceState":
        if self.status == DeviceStatus.LOCKED and self.locked_until is not None and now >= self.locked_until:
            return DeviceState.active() if self.verified else DeviceState.unverified()
        return self

    def is_locked(self, now: datetime) -> bool:
        return self.current(now).status == DeviceStatus.LOCKED

    def lock_minutes_remaining(self, now: datetime) -> int:
        state = self.current(now)
        if state.status != DeviceStatus.LOCKED or state.locked_until is None:
            return 0
        seconds = (state.locked_until - now).total_seconds()
        return max(1, int(-(-seconds // 60)))


def on_failure(
    state: DeviceState,
    failed_attempts: int,
    now: datetime,
    policy: LockPolicy,
) -> Tuple[DeviceState, int]:
    """Count a failed code; the threshold failure locks and resets the counter."""
    state = state.current(now)
    if state.status == DeviceStatus.DEACTIVATED:
        raise InvalidTransition("Deactivated devices cannot be verified")
    if state.status == DeviceStatus.LOCKED:
        return state, failed_attempts

    failed_attempts += 1
    if failed_attempts >= policy.max_failed_attempts:
        return DeviceState.locked(now + policy.lock_duration, verified=state.verified), 0
    return state, failed_attempts


def on_success(state: DeviceState, now: datetime) -> DeviceState:
    """A valid code activates an unverified device and keeps an active one active."""
    state = state.current(now)
    if state.status == DeviceStatus.LOCKED:
        raise InvalidTransition("Device is locked")
    if state.status == DeviceStatus.DEACTIVATED:
        raise InvalidTransition("Device is deactivated")
    return DeviceState.active()


def on_deactivate(state: DeviceState) -> DeviceState:
    return DeviceState.deactivated(verified=state.verified)


def on_admin_unlock(state: DeviceState) -> DeviceState:
    if state.status != DeviceStatus.LOCKED:
        return state
    return DeviceState.active() if state.verified else DeviceState.unverified()


# =============================================================================
# DEVICE
# =============================================================================

@dataclass
class BackupCode:
    code_hash: str
    used: bool = False
    used_at: Optional[datetime] = None


@dataclass
class MFADevice:
    """A user's second factor. The shared secret is write-only."""
    user_id: str
    device_type: DeviceType
    device_name: str
    secret: Optional[str] = field(default=None, repr=False)
    phone_number: Optional[str] = None
    email_address: Optional[str] = None
    backup_codes: List[BackupCode] = field(default_factory=list, repr=False)
    is_primary: bool = False
    state: DeviceState = field(default_factory=DeviceState.unverified)
    failed_attempts: int = 0
    usage_count: int = 0
    last_used: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    challenge_hash: Optional[str] = field(default=None, repr=False)
    challenge_expires_at: Optional[datetime] = None
    device_id: str = field(default_factory=lambda: str(uuid4()))

    @property
    def is_verified(self) -> bool:
        return self.state.verified

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.state.current(now or datetime.utcnow()).status == DeviceStatus.ACTIVE

    def status(self, now: Optional[datetime] = None) -> DeviceStatus:
        return self.state.current(now or datetime.utcnow()).status

    # Codes

    def issue_backup_codes(self, count: int = 10) -> List[str]:
        """Replace backup codes; plaintext is returned once and never stored."""
        codes = generate_backup_codes(count)
        self.backup_codes = [BackupCode(code_hash=hash_backup_code(code)) for code in codes]
        return codes

    def remaining_backup_codes(self) -> int:
        return sum(1 for code in self.backup_codes if not code.used)

    def issue_challenge(self, now: datetime, ttl: timedelta = timedelta(minutes=10)) -> str:
        """One-time code for SMS/email devices, handed to the delivery collaborator."""
        code = f"{secrets.randbelow(10 ** TOTPGenerator.DIGITS):0{TOTPGenerator.DIGITS}d}"
        self.challenge_hash = hash_backup_code(code)
        self.challenge_expires_at = now + ttl
        return code

    def check_code(self, code: str, now: datetime, window: int = 2, allow_backup: bool = True) -> Optional[str]:
        """
        Match a submitted code without touching counters.

        Returns:
            "totp", "challenge" or "backup" for the matching method, else None.
            A matching backup code is consumed.
        """
        code = (code or "").strip()
        if not code:
            return None

        if self.secret and TOTPGenerator.verify_totp(self.secret, code, window=window, at=utc_timestamp(now)):
            return "totp"

        if self.challenge_hash and self.challenge_expires_at and now < self.challenge_expires_at:
            if hmac.compare_digest(self.challenge_hash, hash_backup_code(code)):
                self.challenge_hash = None
                self.challenge_expires_at = None
                return "challenge"

        if not allow_backup:
            return None

        submitted = hash_backup_code(code)
        for backup in self.backup_codes:
            if not backup.used and hmac.compare_digest(backup.code_hash, submitted):
                backup.used = True
                backup.used_at = now
                return "backup"

        return None

    # Transitions

    def record_failure(self, now: datetime, policy: LockPolicy) -> None:
        self.state, self.failed_attempts = on_failure(self.state, self.failed_attempts, now, policy)

    def record_success(self, now: datetime) -> None:
        was_verified = self.state.verified
        self.state = on_success(self.state, now)
        self.failed_attempts = 0
        self.usage_count += 1
        self.last_used = now
        if not was_verified:
            self.verified_at = now

    def deactivate(self) -> None:
        self.state = on_deactivate(self.state)
        self.is_primary = False

    def admin_unlock(self) -> None:
        self.state = on_admin_unlock(self.state)
        self.failed_attempts = 0

    def attempts_remaining(self, policy: LockPolicy, now: datetime) -> int:
        if self.state.is_locked(now):
            return 0
        return max(0, policy.max_failed_attempts - self.failed_attempts)

    def to_public_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        return {
            "device_id": self.device_id,
            "device_type": self.device_type.value,
            "device_name": self.device_name,
            "status": self.status(now).value,
            "is_primary": self.is_primary,
            "is_verified": self.is_verified,
            "usage_count": self.usage_count,
            "last_used": self.last_used.isoformat() if self.last_used else None,
            "backup_codes_remaining": self.remaining_backup_codes(),
            "lock_time_remaining": self.state.lock_minutes_remaining(now),
            "created_at": self.created_at.isoformat(),
        }
