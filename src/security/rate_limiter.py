"""
Sliding-window rate limiting with progressive slow-down.

Two interchangeable limiters:
- RedisRateLimiter: sorted sets keyed per rule and client, shared by all
  workers (required for horizontally scaled deployments)
- InMemoryRateLimiter: same algorithm in process memory, single instance only

``RequestThrottle`` applies named rules (auth, general, password_reset,
admin, upload) and computes the artificial delay that precedes the hard
limit.

Usage:
    throttle = RequestThrottle(InMemoryRateLimiter())
    throttle.check("auth", "ip:10.0.0.1")      # raises RateLimitExceededError
    delay = throttle.slow_down_delay("ip:10.0.0.1")
"""

import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .exceptions import RateLimitExceededError
from .secure_logger import get_logger, log_security_event

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    name: str
    limit: int
    window_seconds: int
    message: str


AUTH_RULE = RateLimitRule("auth", 5, 15 * 60, "Too many login attempts. Please try again in 15 minutes.")
GENERAL_RULE = RateLimitRule("general", 100, 15 * 60, "Too many requests from this IP, please try again later.")
PASSWORD_RESET_RULE = RateLimitRule(
    "password_reset", 3, 60 * 60, "Too many password reset attempts. Please try again in 1 hour."
)
ADMIN_RULE = RateLimitRule("admin", 50, 5 * 60, "Too many admin operations. Please slow down.")
UPLOAD_RULE = RateLimitRule("upload", 10, 10 * 60, "Too many file uploads. Please try again later.")

DEFAULT_RULES: Dict[str, RateLimitRule] = {
    rule.name: rule for rule in (AUTH_RULE, GENERAL_RULE, PASSWORD_RESET_RULE, ADMIN_RULE, UPLOAD_RULE)
}


@dataclass(frozen=True)
class SlowDownPolicy:
    """Delay after ``delay_after`` requests, growing per request up to a cap."""
    window_seconds: int = 15 * 60
    delay_after: int = 2
    delay_ms: int = 500
    max_delay_ms: int = 20000

    def delay_for(self, count: int) -> float:
        """Seconds of delay for the ``count``-th request in the window."""
        if count <= self.delay_after:
            return 0.0
        return min(self.max_delay_ms, (count - self.delay_after) * self.delay_ms) / 1000.0


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0

    def headers(self, now: Optional[float] = None) -> Dict[str, str]:
        now = now if now is not None else time.time()
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
            headers["X-RateLimit-Reset"] = str(int(now) + self.retry_after)
        return headers


# =============================================================================
# LIMITERS
# =============================================================================

class RedisRateLimiter:
    """
    Sliding window rate limiter using Redis sorted sets.

    Each request is a member scored by its timestamp; the window count is
    the number of members newer than ``now - window``.
    """

    def __init__(self, redis_client, key_prefix: str = "lodge:rate_limit:", clock: Callable[[], float] = time.time):
        self.redis = redis_client
        self.key_prefix = key_prefix
        self._clock = clock

    def _get_key(self, identifier: str, window_name: str) -> str:
        return f"{self.key_prefix}{window_name}:{identifier}"

    def hit(self, identifier: str, limit: int, window_seconds: int, window_name: str = "default") -> RateLimitResult:
        """Record a request if it fits in the window."""
        key = self._get_key(identifier, window_name)
        now = self._clock()
        window_start = now - window_seconds

        try:
            pipe = self.redis.pipeline()
            pipe.zremrangebyscore(key, 0, window_start)
            pipe.zcard(key)
            request_id = f"{now}:{id(self)}:{threading.get_ident()}"
            pipe.zadd(key, {request_id: now})
            pipe.expire(key, window_seconds + 10)
            results = pipe.execute()
            current_count = results[1]

            if current_count >= limit:
                # Over limit - remove the request we just added
                self.redis.zrem(key, request_id)
                oldest = self.redis.zrange(key, 0, 0, withscores=True)
                if oldest:
                    retry_after = int(oldest[0][1] + window_seconds - now) + 1
                else:
                    retry_after = window_seconds
                return RateLimitResult(False, limit, 0, retry_after)

            return RateLimitResult(True, limit, limit - current_count - 1)

        except Exception as e:
            # Throttling fails open; authorization never does
            logger.warning(f"Redis rate limit error: {e}")
            return RateLimitResult(True, limit, limit - 1)

    def count(self, identifier: str, window_seconds: int, window_name: str = "default") -> int:
        key = self._get_key(identifier, window_name)
        try:
            self.redis.zremrangebyscore(key, 0, self._clock() - window_seconds)
            return int(self.redis.zcard(key))
        except Exception as e:
            logger.warning(f"Redis count error: {e}")
            return 0

    def reset(self, identifier: str, window_name: str = "default") -> bool:
        try:
            self.redis.delete(self._get_key(identifier, window_name))
            return True
        except Exception as e:
            logger.warning(f"Redis reset error: {e}")
            return False


class InMemoryRateLimiter:
    """
    In-process sliding window.

    Not shared across workers; use only for single-instance deployments.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self.buckets: Dict[str, List[float]] = defaultdict(list)
        self._lock = threading.Lock()

    def _prune(self, key: str, window_start: float) -> List[float]:
        bucket = [t for t in self.buckets.get(key, []) if t > window_start]
        if bucket:
            self.buckets[key] = bucket
        else:
            self.buckets.pop(key, None)
        return bucket

    def hit(self, identifier: str, limit: int, window_seconds: int, window_name: str = "default") -> RateLimitResult:
        key = f"{window_name}:{identifier}"
        now = self._clock()

        with self._lock:
            bucket = self._prune(key, now - window_seconds)
            current_count = len(bucket)

            if current_count >= limit:
                retry_after = int(min(bucket) + window_seconds - now) + 1 if bucket else window_seconds
                return RateLimitResult(False, limit, 0, retry_after)

            self.buckets[key].append(now)
            return RateLimitResult(True, limit, limit - current_count - 1)

    def count(self, identifier: str, window_seconds: int, window_name: str = "default") -> int:
        with self._lock:
            return len(self._prune(f"{window_name}:{identifier}", self._clock() - window_seconds))

    def reset(self, identifier: str, window_name: str = "default") -> bool:
        with self._lock:
            self.buckets.pop(f"{window_name}:{identifier}", None)
        return True


# =============================================================================
# THROTTLE
# =============================================================================

class RequestThrottle:
    """Named rules plus progressive slow-down over one limiter."""

    def __init__(
        self,
        limiter,
        rules: Optional[Dict[str, RateLimitRule]] = None,
        slow_down: Optional[SlowDownPolicy] = None,
        enabled: bool = True,
    ):
        self.limiter = limiter
        self.rules = dict(rules or DEFAULT_RULES)
        self.slow_down = slow_down or SlowDownPolicy()
        self.enabled = enabled

    def hit(self, rule_name: str, key: str) -> RateLimitResult:
        rule = self.rules[rule_name]
        if not self.enabled:
            return RateLimitResult(True, rule.limit, rule.limit)
        return self.limiter.hit(key, rule.limit, rule.window_seconds, window_name=rule.name)

    def check(self, rule_name: str, key: str) -> RateLimitResult:
        """Record a request or raise RateLimitExceededError with Retry-After seconds."""
        result = self.hit(rule_name, key)
        if not result.allowed:
            rule = self.rules[rule_name]
            log_security_event(
                logger,
                "rate_limit_exceeded",
                "WARNING",
                {"rule": rule_name, "key": key, "retry_after": result.retry_after},
            )
            raise RateLimitExceededError(rule.message, retry_after=result.retry_after, limit=rule.limit)
        return result

    def slow_down_delay(self, key: str) -> float:
        """Record a request in the slow-down window and return its delay in seconds."""
        if not self.enabled:
            return 0.0
        policy = self.slow_down
        # Counting window only; the limit is never reached
        self.limiter.hit(key, policy.window_seconds * 1000, policy.window_seconds, window_name="slow_down")
        count = self.limiter.count(key, policy.window_seconds, window_name="slow_down")
        return policy.delay_for(count)

    def reset(self, key: str, rule_names: Optional[List[str]] = None) -> None:
        """Clear counters for a key, e.g. after a verified successful login."""
        for name in rule_names or [AUTH_RULE.name, "slow_down"]:
            self.limiter.reset(key, window_name=name)


def rate_limit_key(user_id: Optional[str], client_ip: Optional[str]) -> str:
    """``user:{id}`` when authenticated, otherwise the client IP."""
    if user_id:
        return f"user:{user_id}"
    return f"ip:{client_ip or 'unknown'}"
