"""
MFA persistence: device storage and session verification flags.

Device counters are changed through ``update`` which applies a mutation
atomically with respect to other attempts on the same device, so
concurrent failed codes cannot under-count.

Session flags ("MFA verified at T") are read-mostly and kept in memory or
in Redis with a key TTL equal to the verification window.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from .exceptions import NotFoundError
from .mfa_device import MFADevice

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# DEVICE STORE
# =============================================================================

class DeviceStore(ABC):
    """Abstract base class for MFA device storage."""

    @abstractmethod
    def add(self, device: MFADevice) -> MFADevice:
        pass

    @abstractmethod
    def get(self, device_id: str) -> Optional[MFADevice]:
        pass

    @abstractmethod
    def list_for_user(self, user_id: str) -> List[MFADevice]:
        pass

    @abstractmethod
    def update(self, device_id: str, mutate: Callable[[MFADevice], T]) -> T:
        """Apply ``mutate`` to the stored device atomically and persist it."""
        pass

    @abstractmethod
    def update_user_devices(self, user_id: str, mutate: Callable[[List[MFADevice]], T]) -> T:
        """Apply ``mutate`` to all of a user's devices atomically; removed ones are deleted."""
        pass

    @abstractmethod
    def delete_unverified_before(self, cutoff: datetime) -> int:
        pass


class InMemoryDeviceStore(DeviceStore):
    """Thread-safe in-memory device store."""

    def __init__(self):
        self._devices: Dict[str, MFADevice] = {}
        self._lock = threading.RLock()

    def add(self, device: MFADevice) -> MFADevice:
        with self._lock:
            self._devices[device.device_id] = copy.deepcopy(device)
        return device

    def get(self, device_id: str) -> Optional[MFADevice]:
        with self._lock:
            return copy.deepcopy(self._devices.get(device_id))

    def list_for_user(self, user_id: str) -> List[MFADevice]:
        with self._lock:
            devices = [d for d in self._devices.values() if d.user_id == user_id]
            return copy.deepcopy(sorted(devices, key=lambda d: d.created_at))

    def update(self, device_id: str, mutate: Callable[[MFADevice], T]) -> T:
        with self._lock:
            stored = self._devices.get(device_id)
            if stored is None:
                raise NotFoundError(f"MFA device not found: {device_id}")
            working = copy.deepcopy(stored)
            result = mutate(working)
            self._devices[device_id] = working
            return result

    def update_user_devices(self, user_id: str, mutate: Callable[[List[MFADevice]], T]) -> T:
        with self._lock:
            originals = [d for d in self._devices.values() if d.user_id == user_id]
            working = copy.deepcopy(sorted(originals, key=lambda d: d.created_at))
            result = mutate(working)
            for original in originals:
                self._devices.pop(original.device_id, None)
            for device in working:
                self._devices[device.device_id] = device
            return result

    def delete_unverified_before(self, cutoff: datetime) -> int:
        with self._lock:
            stale = [
                device_id for device_id, device in self._devices.items()
                if not device.is_verified and device.created_at < cutoff
            ]
            for device_id in stale:
                del self._devices[device_id]
            return len(stale)


# =============================================================================
# SESSION VERIFICATION FLAGS
# =============================================================================

class SessionVerificationStore(ABC):
    """Per-session "MFA verified at T" flags."""

    @abstractmethod
    def mark_verified(self, session_id: str, user_id: str, at: datetime) -> None:
        pass

    @abstractmethod
    def verified_at(self, session_id: str) -> Optional[datetime]:
        pass

    @abstractmethod
    def clear_user(self, user_id: str) -> None:
        pass

    @abstractmethod
    def clear_session(self, session_id: str) -> None:
        pass


class InMemorySessionVerificationStore(SessionVerificationStore):
    """Session flags for single-instance deployments and tests."""

    def __init__(self):
        self._sessions: Dict[str, Tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    def mark_verified(self, session_id: str, user_id: str, at: datetime) -> None:
        with self._lock:
            self._sessions[session_id] = (user_id, at)

    def verified_at(self, session_id: str) -> Optional[datetime]:
        entry = self._sessions.get(session_id)
        return entry[1] if entry else None

    def clear_user(self, user_id: str) -> None:
        with self._lock:
            for session_id in [s for s, (uid, _) in self._sessions.items() if uid == user_id]:
                del self._sessions[session_id]

    def clear_session(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)


class RedisSessionVerificationStore(SessionVerificationStore):
    """
    Redis-backed session flags shared by all workers.

    Keys expire with the verification window; a missing key means
    "not verified".
    """

    def __init__(self, redis_client: Any, window_seconds: int = 1800, prefix: str = "lodge:"):
        self.redis = redis_client
        self.window_seconds = window_seconds
        self.prefix = prefix

    def _session_key(self, session_id: str) -> str:
        return f"{self.prefix}mfa:session:{session_id}"

    def _user_key(self, user_id: str) -> str:
        return f"{self.prefix}mfa:user_sessions:{user_id}"

    def mark_verified(self, session_id: str, user_id: str, at: datetime) -> None:
        pipe = self.redis.pipeline()
        pipe.set(self._session_key(session_id), at.isoformat(), ex=self.window_seconds)
        pipe.sadd(self._user_key(user_id), session_id)
        pipe.expire(self._user_key(user_id), self.window_seconds)
        pipe.execute()

    def verified_at(self, session_id: str) -> Optional[datetime]:
        try:
            value = self.redis.get(self._session_key(session_id))
        except Exception as e:
            # Treated as unverified so the gate re-prompts
            logger.warning(f"Redis session flag read error: {e}")
            return None
        if not value:
            return None
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return datetime.fromisoformat(value)

    def clear_user(self, user_id: str) -> None:
        user_key = self._user_key(user_id)
        sessions = self.redis.smembers(user_key)
        keys = [self._session_key(s.decode() if isinstance(s, bytes) else s) for s in sessions]
        if keys:
            self.redis.delete(*keys)
        self.redis.delete(user_key)

    def clear_session(self, session_id: str) -> None:
        self.redis.delete(self._session_key(session_id))
