"""
Account lockout - failed authentication counters and timed locks.

The threshold failure (5 by default) locks the account for the lock window
(24 hours by default) and resets the counter, so the first attempt after
the lock has elapsed counts as 1. Locks lift themselves; ``admin_unlock``
is the explicit override.

Counters live behind ``AttemptCounterBackend``. The in-memory backend is
lock-guarded for single-instance deployments; the Redis backend runs
one Lua script per failure so concurrent failures from several workers are
never under-counted and lock exactly once.

MFA device failures are counted on the device itself (see mfa_device).
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

import redis

from .exceptions import AccountLockedError
from .secure_logger import get_logger, log_security_event

logger = get_logger(__name__)


@dataclass(frozen=True)
class LockoutStatus:
    """Lock state for one principal. ``allowed`` is False while locked."""
    allowed: bool
    attempts: int
    attempts_remaining: int
    locked_until: Optional[datetime] = None
    lock_time_remaining: int = 0
    reason: str = ""

    @property
    def locked(self) -> bool:
        return not self.allowed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "locked": self.locked,
            "attempts": self.attempts,
            "attemptsRemaining": self.attempts_remaining,
            "lockedUntil": self.locked_until.isoformat() if self.locked_until else None,
            "lockTimeRemaining": self.lock_time_remaining,
            "reason": self.reason,
        }


def minutes_until(until: datetime, now: datetime) -> int:
    """Whole minutes left, rounded up, never below 1 while in the future."""
    seconds = (until - now).total_seconds()
    if seconds <= 0:
        return 0
    return max(1, int(-(-seconds // 60)))


# =============================================================================
# BACKENDS
# =============================================================================

class AttemptCounterBackend(ABC):
    """Atomic failure counters with timed locks."""

    @abstractmethod
    def register_failure(
        self,
        key: str,
        threshold: int,
        lock_duration: timedelta,
        now: datetime,
    ) -> Tuple[int, Optional[datetime]]:
        """
        Count one failure.

        Returns:
            (attempts after this failure, lock expiry if this failure locked)
        """
        pass

    @abstractmethod
    def get_state(self, key: str, now: datetime) -> Tuple[int, Optional[datetime]]:
        """(current attempts, active lock expiry or None)."""
        pass

    @abstractmethod
    def clear(self, key: str) -> None:
        pass


class InMemoryAttemptCounter(AttemptCounterBackend):
    """Counters for single-instance deployments and tests."""

    def __init__(self):
        self._attempts: Dict[str, int] = {}
        self._locks: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def _expire(self, key: str, now: datetime) -> None:
        until = self._locks.get(key)
        if until is not None and now >= until:
            del self._locks[key]

    def register_failure(self, key, threshold, lock_duration, now):
        with self._lock:
            self._expire(key, now)
            if key in self._locks:
                return self._attempts.get(key, 0), None

            attempts = self._attempts.get(key, 0) + 1
            if attempts >= threshold:
                until = now + lock_duration
                self._locks[key] = until
                self._attempts[key] = 0
                return attempts, until

            self._attempts[key] = attempts
            return attempts, None

    def get_state(self, key, now):
        with self._lock:
            self._expire(key, now)
            return self._attempts.get(key, 0), self._locks.get(key)

    def clear(self, key):
        with self._lock:
            self._attempts.pop(key, None)
            self._locks.pop(key, None)


class RedisAttemptCounter(AttemptCounterBackend):
    """
    Shared counters for horizontally scaled deployments.

    A failure is counted by one Lua script: it skips counting while the
    lock key exists, INCRs the counter and, at the threshold, writes the
    lock key and deletes the counter in the same step. Workers crossing
    the threshold together therefore lock exactly once. The lock key's TTL
    equals the lock window, so it disappears on its own.
    """

    # KEYS: counter, lock. ARGV: threshold, lock seconds, lock expiry (ISO)
    _LUA_REGISTER_FAILURE = """
        local count_key = KEYS[1]
        local lock_key = KEYS[2]
        local threshold = tonumber(ARGV[1])
        local lock_seconds = tonumber(ARGV[2])

        if redis.call('EXISTS', lock_key) == 1 then
            return {tonumber(redis.call('GET', count_key) or '0'), 0}
        end

        local attempts = redis.call('INCR', count_key)
        redis.call('EXPIRE', count_key, lock_seconds)
        if attempts >= threshold then
            redis.call('SET', lock_key, ARGV[3], 'EX', lock_seconds)
            redis.call('DEL', count_key)
            return {attempts, 1}
        end
        return {attempts, 0}
    """

    def __init__(self, redis_client: Any, prefix: str = "lodge:lockout:"):
        self.redis = redis_client
        self.prefix = prefix
        self._script_sha: Optional[str] = None

    def _count_key(self, key: str) -> str:
        return f"{self.prefix}attempts:{key}"

    def _lock_key(self, key: str) -> str:
        return f"{self.prefix}locked:{key}"

    def _run_script(self, *args: Any) -> Any:
        if self._script_sha is None:
            self._script_sha = self.redis.script_load(self._LUA_REGISTER_FAILURE)
        try:
            return self.redis.evalsha(self._script_sha, 2, *args)
        except redis.exceptions.NoScriptError:
            # Script cache flushed (restart or SCRIPT FLUSH); load it again
            self._script_sha = self.redis.script_load(self._LUA_REGISTER_FAILURE)
            return self.redis.evalsha(self._script_sha, 2, *args)

    def register_failure(self, key, threshold, lock_duration, now):
        lock_seconds = int(lock_duration.total_seconds())
        until = now + lock_duration
        attempts, locked = self._run_script(
            self._count_key(key),
            self._lock_key(key),
            threshold,
            lock_seconds,
            until.isoformat(),
        )
        return int(attempts), until if int(locked) else None

    def get_state(self, key, now):
        attempts = int(self.redis.get(self._count_key(key)) or 0)
        raw = self.redis.get(self._lock_key(key))
        if not raw:
            return attempts, None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        until = datetime.fromisoformat(raw)
        return attempts, until if until > now else None

    def clear(self, key):
        self.redis.delete(self._count_key(key), self._lock_key(key))


# =============================================================================
# MANAGER
# =============================================================================

class LockoutManager:
    """Account lockout policy over an attempt counter backend."""

    def __init__(
        self,
        backend: Optional[AttemptCounterBackend] = None,
        threshold: int = 5,
        lock_duration: timedelta = timedelta(hours=24),
        namespace: str = "account",
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.backend = backend or InMemoryAttemptCounter()
        self.threshold = threshold
        self.lock_duration = lock_duration
        self.namespace = namespace
        self._clock = clock

    def _key(self, principal: str) -> str:
        return f"{self.namespace}:{principal.lower()}"

    def status(self, principal: str, now: Optional[datetime] = None) -> LockoutStatus:
        now = now or self._clock()
        attempts, locked_until = self.backend.get_state(self._key(principal), now)
        if locked_until is not None:
            minutes = minutes_until(locked_until, now)
            return LockoutStatus(
                allowed=False,
                attempts=attempts,
                attempts_remaining=0,
                locked_until=locked_until,
                lock_time_remaining=minutes,
                reason=f"Account is locked due to too many failed login attempts. Try again in {minutes} minutes.",
            )
        return LockoutStatus(
            allowed=True,
            attempts=attempts,
            attempts_remaining=max(0, self.threshold - attempts),
        )

    def check(self, principal: str, now: Optional[datetime] = None) -> LockoutStatus:
        """Raise AccountLockedError inside the lock window, else return the status."""
        status = self.status(principal, now)
        if status.locked:
            raise AccountLockedError(status.reason, lock_time_remaining=status.lock_time_remaining)
        return status

    def is_locked(self, principal: str, now: Optional[datetime] = None) -> bool:
        return self.status(principal, now).locked

    def record_failure(self, principal: str, now: Optional[datetime] = None) -> LockoutStatus:
        """Count a failed attempt; the threshold failure applies the lock."""
        now = now or self._clock()
        attempts, locked_until = self.backend.register_failure(
            self._key(principal), self.threshold, self.lock_duration, now
        )
        if locked_until is not None:
            log_security_event(
                logger,
                "account_locked",
                "WARNING",
                {"principal": principal, "attempts": attempts, "locked_until": locked_until.isoformat()},
            )
            return self.status(principal, now)

        logger.info(f"Failed attempt {attempts}/{self.threshold} for {self.namespace} {principal}")
        return LockoutStatus(
            allowed=True,
            attempts=attempts,
            attempts_remaining=max(0, self.threshold - attempts),
        )

    def record_success(self, principal: str) -> None:
        self.backend.clear(self._key(principal))

    def admin_unlock(self, principal: str, actor_id: Optional[str] = None) -> None:
        self.backend.clear(self._key(principal))
        logger.warning(f"{self.namespace} {principal} unlocked by admin {actor_id}")
