"""
MFA Enforcer - device lifecycle, verification and the session MFA gate.

Provides:
- Device setup (authenticator app, SMS, email, hardware token) with
  provisioning URI and single-use backup codes
- Setup verification and login/step-up verification with device lockout
- A per-session "verified at T" flag valid for the verification window
- Role and action driven requirement checks for the authorization engine
- Device removal with primary promotion and the last-device rule
- Administrative disable/unlock and cleanup of abandoned setups

Usage:
    enforcer = MFAEnforcer(store, devices, roles, sessions)
    setup = enforcer.setup_device("u1", DeviceType.AUTHENTICATOR_APP, "Phone")
    enforcer.verify_setup(setup.data["device_id"], "123456", user_id="u1")
    result = enforcer.verify("u1", "654321", session_id="s-1")
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from rbac.catalog import RoleCatalog
from rbac.enums import DenialCode
from rbac.models import UserAccount
from rbac.resolver import held_role_names
from rbac.store import AuthorizationStore

from .exceptions import NotFoundError
from .mfa_device import DeviceStatus, DeviceType, LockPolicy, MFADevice
from .mfa_store import DeviceStore, SessionVerificationStore
from .secure_logger import get_logger
from .totp import TOTPGenerator

logger = get_logger(__name__)


# Result codes returned in MFAResult.code
OK = "OK"
USER_NOT_FOUND = "USER_NOT_FOUND"
DEVICE_NOT_FOUND = "DEVICE_NOT_FOUND"
INVALID_DEVICE = "INVALID_DEVICE"
TOTP_ALREADY_EXISTS = "TOTP_ALREADY_EXISTS"
ALREADY_VERIFIED = "ALREADY_VERIFIED"
NOT_VERIFIED = "NOT_VERIFIED"
NO_ACTIVE_DEVICE = "NO_ACTIVE_DEVICE"
INVALID_CODE = "INVALID_CODE"
DEVICE_LOCKED = "DEVICE_LOCKED"
LAST_DEVICE = "LAST_DEVICE"


@dataclass
class MFAResult:
    """Outcome of an MFA operation. Failures are values, not exceptions."""
    success: bool
    code: str
    message: str
    attempts_remaining: Optional[int] = None
    lock_time_remaining: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {"success": self.success, "code": self.code, "message": self.message}
        if self.attempts_remaining is not None:
            result["attemptsRemaining"] = self.attempts_remaining
        if self.lock_time_remaining is not None:
            result["lockTimeRemaining"] = self.lock_time_remaining
        if self.data:
            result["data"] = self.data
        return result


@dataclass(frozen=True)
class MFAGateResult:
    satisfied: bool
    code: DenialCode
    reason: str


_SATISFIED = MFAGateResult(True, DenialCode.GRANTED, "MFA requirement satisfied")


@dataclass(frozen=True)
class _Attempt:
    outcome: str  # "ok", "failed", "locked"
    method: Optional[str] = None
    attempts_remaining: int = 0
    lock_minutes: int = 0


def _usable(device: MFADevice, now: datetime) -> bool:
    """Verified and not deactivated; a locked device still counts as enrolled."""
    return device.is_verified and device.status(now) in (DeviceStatus.ACTIVE, DeviceStatus.LOCKED)


class MFAEnforcer:
    """MFA device lifecycle and session verification gate."""

    def __init__(
        self,
        store: AuthorizationStore,
        devices: DeviceStore,
        roles: RoleCatalog,
        sessions: SessionVerificationStore,
        verification_window: timedelta = timedelta(minutes=30),
        policy: Optional[LockPolicy] = None,
        totp_window: int = 2,
        backup_code_count: int = 10,
        issuer: str = "MCAN Lodge",
        unverified_max_age: timedelta = timedelta(hours=24),
        delivery: Optional[Callable[[MFADevice, str], None]] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._store = store
        self._devices = devices
        self._roles = roles
        self._sessions = sessions
        self.verification_window = verification_window
        self.policy = policy or LockPolicy()
        self.totp_window = totp_window
        self.backup_code_count = backup_code_count
        self.issuer = issuer
        self.unverified_max_age = unverified_max_age
        self._delivery = delivery
        self._clock = clock

    # =========================================================================
    # REQUIREMENT CHECKS
    # =========================================================================

    def role_requirement(self, user: UserAccount) -> Tuple[bool, str]:
        """Whether any held role is flagged requires_mfa."""
        active = self._roles.hierarchy().roles
        for name in held_role_names(user, active):
            role = active.get(name)
            if role is not None and role.requires_mfa:
                return True, "User has role that requires MFA"
        return False, "User role does not require MFA"

    def has_active_mfa(self, user: UserAccount, now: Optional[datetime] = None) -> bool:
        now = now or self._clock()
        if not user.mfa_enabled:
            return False
        return any(_usable(d, now) for d in self._devices.list_for_user(user.user_id))

    def session_verified_at(self, session_id: Optional[str]) -> Optional[datetime]:
        if not session_id:
            return None
        return self._sessions.verified_at(session_id)

    def is_verification_current(self, session_id: Optional[str], now: Optional[datetime] = None) -> bool:
        verified_at = self.session_verified_at(session_id)
        if verified_at is None:
            return False
        return (now or self._clock()) - verified_at <= self.verification_window

    def end_session(self, session_id: str) -> None:
        """Forget the session's verification (logout)."""
        self._sessions.clear_session(session_id)

    def check_requirement(
        self,
        user: UserAccount,
        action_requires_mfa: bool = False,
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> MFAGateResult:
        """
        Gate for role- or action-driven MFA.

        Missing enrollment is "setup required"; enrolled users need a
        session verification younger than the window. Device lock state
        does not affect this check.
        """
        now = now or self._clock()
        role_required, _ = self.role_requirement(user)
        if not (role_required or action_requires_mfa):
            return _SATISFIED

        if not self.has_active_mfa(user, now):
            subject = "your role" if role_required else "this action"
            return MFAGateResult(False, DenialCode.MFA_SETUP_REQUIRED, f"MFA setup required for {subject}")

        verified_at = self.session_verified_at(session_id)
        if verified_at is None:
            return MFAGateResult(False, DenialCode.MFA_VERIFICATION_REQUIRED, "MFA verification required")
        if now - verified_at > self.verification_window:
            return MFAGateResult(False, DenialCode.MFA_VERIFICATION_EXPIRED, "MFA verification expired")
        return _SATISFIED

    def get_status(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Requirement, enrollment and session verification summary."""
        now = now or self._clock()
        user = self._store.get_user(user_id)
        if user is None:
            return {"required": False, "reason": "User not found", "hasActiveMFA": False,
                    "isVerified": False, "verificationExpired": True, "deviceCount": 0, "devices": []}

        required, reason = self.role_requirement(user)
        devices = [d for d in self._devices.list_for_user(user_id) if _usable(d, now)]
        verified_at = self.session_verified_at(session_id)
        expired = verified_at is None or now - verified_at > self.verification_window

        return {
            "required": required,
            "reason": reason,
            "hasActiveMFA": user.mfa_enabled and bool(devices),
            "isVerified": verified_at is not None and not expired,
            "verificationExpired": expired,
            "verifiedAt": verified_at.isoformat() if verified_at else None,
            "deviceCount": len(devices),
            "devices": [d.to_public_dict(now) for d in devices],
        }

    # =========================================================================
    # SETUP
    # =========================================================================

    def setup_device(
        self,
        user_id: str,
        device_type: DeviceType,
        device_name: str,
        phone_number: Optional[str] = None,
        email_address: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> MFAResult:
        """
        Start enrollment of a new device.

        The device stays unverified until ``verify_setup`` sees a valid code.
        The secret and backup codes are returned once and never again.
        """
        now = now or self._clock()
        device_type = DeviceType(device_type)
        user = self._store.get_user(user_id)
        if user is None:
            return MFAResult(False, USER_NOT_FOUND, "User not found")

        if device_type == DeviceType.SMS and not phone_number:
            return MFAResult(False, INVALID_DEVICE, "Phone number required for SMS devices")
        if device_type == DeviceType.EMAIL and not email_address:
            return MFAResult(False, INVALID_DEVICE, "Email address required for email devices")

        if device_type == DeviceType.AUTHENTICATOR_APP:
            conflict = self._devices.update_user_devices(
                user_id, lambda devices: self._drop_pending_authenticators(devices, now)
            )
            if conflict:
                return MFAResult(False, TOTP_ALREADY_EXISTS, "Authenticator app already configured")

        device = MFADevice(
            user_id=user_id,
            device_type=device_type,
            device_name=device_name,
            phone_number=phone_number,
            email_address=email_address,
            created_at=now,
        )
        data: Dict[str, Any] = {"device_id": device.device_id, "device_type": device_type.value}

        if device_type in (DeviceType.AUTHENTICATOR_APP, DeviceType.HARDWARE_TOKEN):
            device.secret = TOTPGenerator.generate_secret()
            data["secret"] = device.secret
            data["provisioning_uri"] = TOTPGenerator.get_provisioning_uri(
                device.secret, user.email or user_id, self.issuer
            )
        data["backup_codes"] = device.issue_backup_codes(self.backup_code_count)

        challenge = None
        if device_type in (DeviceType.SMS, DeviceType.EMAIL):
            challenge = device.issue_challenge(now)

        self._devices.add(device)
        if challenge is not None:
            self._deliver(device, challenge)

        logger.info(f"MFA setup started for user {user_id}: {device_type.value} device {device.device_id}")
        return MFAResult(True, OK, "MFA device created; verify a code to activate it", data=data)

    def verify_setup(
        self,
        device_id: str,
        code: str,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> MFAResult:
        """Activate an unverified device with its first valid code."""
        now = now or self._clock()
        device = self._devices.get(device_id)
        if device is None or (user_id is not None and device.user_id != user_id):
            return MFAResult(False, DEVICE_NOT_FOUND, "MFA device not found")
        if device.is_verified:
            return MFAResult(False, ALREADY_VERIFIED, "MFA device already verified")
        if device.status(now) == DeviceStatus.DEACTIVATED:
            return MFAResult(False, INVALID_DEVICE, "MFA device is deactivated")

        attempt = self._devices.update(device_id, lambda d: self._attempt(d, code, now, allow_backup=False))
        if attempt.outcome != "ok":
            return self._failure_result(device_id, attempt)

        self._devices.update_user_devices(device.user_id, lambda devices: self._ensure_primary(devices, device_id, now))
        self._set_mfa_enabled(device.user_id, True)
        if session_id:
            self._sessions.mark_verified(session_id, device.user_id, now)

        logger.info(f"MFA device {device_id} verified for user {device.user_id}")
        return MFAResult(True, OK, "MFA setup completed", data={"device_id": device_id})

    # =========================================================================
    # VERIFICATION
    # =========================================================================

    def verify(
        self,
        user_id: str,
        code: str,
        device_id: Optional[str] = None,
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> MFAResult:
        """
        Verify a rolling code, SMS/email challenge or unused backup code.

        Without ``device_id`` the primary device is used. Success resets the
        failure counter and marks the session verified.
        """
        now = now or self._clock()
        target = self._select_device(user_id, device_id, now)
        if target is None:
            return MFAResult(False, NO_ACTIVE_DEVICE, "No active MFA device found")

        attempt = self._devices.update(target.device_id, lambda d: self._attempt(d, code, now, allow_backup=True))
        if attempt.outcome != "ok":
            return self._failure_result(target.device_id, attempt)

        if session_id:
            self._sessions.mark_verified(session_id, user_id, now)

        data: Dict[str, Any] = {"device_id": target.device_id, "method": attempt.method}
        if attempt.method == "backup":
            remaining = self._devices.get(target.device_id).remaining_backup_codes()
            data["backup_codes_remaining"] = remaining
            logger.info(f"Backup code used for user {user_id}, {remaining} remaining")

        return MFAResult(True, OK, "MFA verification successful", data=data)

    def send_challenge(self, user_id: str, device_id: str, now: Optional[datetime] = None) -> MFAResult:
        """Issue a fresh one-time code to an SMS or email device."""
        now = now or self._clock()
        device = self._devices.get(device_id)
        if device is None or device.user_id != user_id:
            return MFAResult(False, DEVICE_NOT_FOUND, "MFA device not found")
        if device.device_type not in (DeviceType.SMS, DeviceType.EMAIL):
            return MFAResult(False, INVALID_DEVICE, "Device does not receive codes")
        if device.state.is_locked(now):
            minutes = device.state.lock_minutes_remaining(now)
            return MFAResult(False, DEVICE_LOCKED, f"Device locked. Try again in {minutes} minutes",
                             attempts_remaining=0, lock_time_remaining=minutes)

        challenge = self._devices.update(device_id, lambda d: d.issue_challenge(now))
        self._deliver(device, challenge)
        return MFAResult(True, OK, "Verification code sent")

    # =========================================================================
    # DEVICE MANAGEMENT
    # =========================================================================

    def list_devices(self, user_id: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or self._clock()
        return [d.to_public_dict(now) for d in self._devices.list_for_user(user_id)]

    def remove_device(
        self,
        user_id: str,
        device_id: str,
        admin_override: bool = False,
        now: Optional[datetime] = None,
    ) -> MFAResult:
        """Delete a device; see ``_retire`` for the last-device rule."""
        return self._retire(user_id, device_id, admin_override, delete=True, now=now)

    def deactivate_device(
        self,
        user_id: str,
        device_id: str,
        admin_override: bool = False,
        now: Optional[datetime] = None,
    ) -> MFAResult:
        """Keep the record but take the device out of service."""
        return self._retire(user_id, device_id, admin_override, delete=False, now=now)

    def regenerate_backup_codes(
        self,
        user_id: str,
        device_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> MFAResult:
        """Replace the backup codes of a verified device (primary by default)."""
        now = now or self._clock()
        target = self._select_device(user_id, device_id, now)
        if target is None:
            return MFAResult(False, NO_ACTIVE_DEVICE, "No active MFA device found")

        codes = self._devices.update(target.device_id, lambda d: d.issue_backup_codes(self.backup_code_count))
        logger.info(f"Backup codes regenerated for user {user_id} device {target.device_id}")
        return MFAResult(True, OK, "Backup codes regenerated",
                         data={"device_id": target.device_id, "backup_codes": codes})

    def admin_disable(self, user_id: str, actor_id: Optional[str] = None) -> MFAResult:
        """Deactivate every device, turn MFA off and drop session verifications."""
        def deactivate_all(devices: List[MFADevice]) -> int:
            count = 0
            for device in devices:
                if device.state.status != DeviceStatus.DEACTIVATED:
                    device.deactivate()
                    count += 1
            return count

        count = self._devices.update_user_devices(user_id, deactivate_all)
        self._set_mfa_enabled(user_id, False)
        self._sessions.clear_user(user_id)
        logger.warning(f"MFA disabled for user {user_id} by admin {actor_id}: {count} devices deactivated")
        return MFAResult(True, OK, "MFA disabled", data={"devices_deactivated": count})

    def admin_unlock_device(self, device_id: str, actor_id: Optional[str] = None) -> MFAResult:
        device = self._devices.get(device_id)
        if device is None:
            return MFAResult(False, DEVICE_NOT_FOUND, "MFA device not found")
        self._devices.update(device_id, lambda d: d.admin_unlock())
        logger.warning(f"MFA device {device_id} unlocked by admin {actor_id}")
        return MFAResult(True, OK, "MFA device unlocked", data={"device_id": device_id})

    def cleanup_unverified_devices(self, now: Optional[datetime] = None) -> int:
        """Remove abandoned setups older than the unverified max age."""
        now = now or self._clock()
        removed = self._devices.delete_unverified_before(now - self.unverified_max_age)
        if removed:
            logger.info(f"Removed {removed} unverified MFA devices")
        return removed

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _attempt(self, device: MFADevice, code: str, now: datetime, allow_backup: bool) -> _Attempt:
        """Runs inside the store's atomic update."""
        if device.state.is_locked(now):
            return _Attempt("locked", lock_minutes=device.state.lock_minutes_remaining(now))

        method = device.check_code(code, now, window=self.totp_window, allow_backup=allow_backup)
        if method:
            device.record_success(now)
            return _Attempt("ok", method=method, attempts_remaining=self.policy.max_failed_attempts)

        device.record_failure(now, self.policy)
        if device.state.is_locked(now):
            return _Attempt("locked", lock_minutes=device.state.lock_minutes_remaining(now))
        return _Attempt("failed", attempts_remaining=device.attempts_remaining(self.policy, now))

    def _failure_result(self, device_id: str, attempt: _Attempt) -> MFAResult:
        if attempt.outcome == "locked":
            logger.warning(f"MFA device {device_id} locked for {attempt.lock_minutes} minutes")
            return MFAResult(
                False,
                DEVICE_LOCKED,
                f"Device locked due to too many failed attempts. Try again in {attempt.lock_minutes} minutes",
                attempts_remaining=0,
                lock_time_remaining=attempt.lock_minutes,
            )
        return MFAResult(
            False,
            INVALID_CODE,
            "Invalid verification code",
            attempts_remaining=attempt.attempts_remaining,
        )

    def _select_device(self, user_id: str, device_id: Optional[str], now: datetime) -> Optional[MFADevice]:
        candidates = [d for d in self._devices.list_for_user(user_id) if _usable(d, now)]
        if device_id is not None:
            return next((d for d in candidates if d.device_id == device_id), None)
        primary = next((d for d in candidates if d.is_primary), None)
        return primary or (candidates[0] if candidates else None)

    def _drop_pending_authenticators(self, devices: List[MFADevice], now: datetime) -> bool:
        """Discard abandoned authenticator setups; True if one is already enrolled."""
        for device in devices:
            if (device.device_type == DeviceType.AUTHENTICATOR_APP and device.is_verified
                    and device.status(now) != DeviceStatus.DEACTIVATED):
                return True
        devices[:] = [
            d for d in devices
            if not (d.device_type == DeviceType.AUTHENTICATOR_APP and not d.is_verified)
        ]
        return False

    @staticmethod
    def _ensure_primary(devices: List[MFADevice], device_id: str, now: datetime) -> None:
        if any(d.is_primary and _usable(d, now) for d in devices):
            return
        for device in devices:
            if device.device_id == device_id:
                device.is_primary = True

    def _retire(
        self,
        user_id: str,
        device_id: str,
        admin_override: bool,
        delete: bool,
        now: Optional[datetime],
    ) -> MFAResult:
        """
        Remove or deactivate a device.

        The last usable device of a user whose role requires MFA is kept
        unless ``admin_override``. Losing the primary promotes the most
        recently verified remaining device. When no usable device remains
        ``mfa_enabled`` is cleared.
        """
        now = now or self._clock()
        user = self._store.get_user(user_id)
        if user is None:
            return MFAResult(False, USER_NOT_FOUND, "User not found")
        role_required, _ = self.role_requirement(user)

        def mutate(devices: List[MFADevice]) -> Tuple[Optional[MFAResult], int]:
            target = next((d for d in devices if d.device_id == device_id), None)
            if target is None:
                return MFAResult(False, DEVICE_NOT_FOUND, "MFA device not found"), 0

            others = [d for d in devices if d.device_id != device_id and _usable(d, now)]
            if _usable(target, now) and not others and role_required and not admin_override:
                return MFAResult(
                    False,
                    LAST_DEVICE,
                    "Cannot remove the last MFA device while your role requires MFA",
                ), 1

            was_primary = target.is_primary
            if delete:
                devices.remove(target)
            else:
                target.deactivate()

            if was_primary and others:
                promoted = max(others, key=lambda d: d.verified_at or d.created_at)
                promoted.is_primary = True
            return None, len(others)

        refusal, remaining = self._devices.update_user_devices(user_id, mutate)
        if refusal is not None:
            return refusal

        if remaining == 0:
            self._set_mfa_enabled(user_id, False)
            self._sessions.clear_user(user_id)

        verb = "removed" if delete else "deactivated"
        logger.info(f"MFA device {device_id} {verb} for user {user_id}; {remaining} active devices remain")
        return MFAResult(True, OK, f"MFA device {verb}",
                         data={"device_id": device_id, "remaining_devices": remaining,
                               "mfa_enabled": remaining > 0})

    def _set_mfa_enabled(self, user_id: str, enabled: bool) -> None:
        def apply(user: UserAccount) -> None:
            user.mfa_enabled = enabled

        try:
            self._store.update_user(user_id, apply)
        except NotFoundError:
            logger.warning(f"Cannot set MFA flag for unknown user {user_id}")

    def _deliver(self, device: MFADevice, code: str) -> None:
        if self._delivery is None:
            logger.warning(f"No delivery channel configured for {device.device_type.value} device {device.device_id}")
            return
        try:
            self._delivery(device, code)
        except Exception as e:
            logger.error(f"MFA code delivery failed for device {device.device_id}: {e}")
