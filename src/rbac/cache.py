"""
Authorization Cache - Two-layer caching for resolved permissions and roles.

Layers:
1. Process-level: LRU cache with TTL (read-heavy, narrow critical section)
2. Redis: Distributed cache shared across workers - optional

Entries:
- Resolved permission maps per (user, state, campus) - 5-min TTL
- Role hierarchy snapshot - 10-min TTL

Invalidation:
- Explicit hooks fired by catalog mutations clear affected entries
  instead of waiting out the TTL
- Redis pub/sub message for cross-worker notification; InvalidationListener
  replays other workers' messages into the local hub

A stale read inside the TTL window is accepted.
"""

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


def _identity(value: Any) -> Any:
    return value


# =============================================================================
# CACHE CONFIGURATION
# =============================================================================

@dataclass
class CacheConfig:
    """Cache configuration settings."""
    process_cache_size: int = 1000
    process_cache_ttl_seconds: int = 300  # 5 minutes

    redis_cache_ttl_seconds: int = 300
    redis_prefix: str = "rbac:perms:"

    invalidation_channel: str = "rbac:invalidate"


# =============================================================================
# CACHE ENTRY
# =============================================================================

@dataclass
class CacheEntry:
    """A cached value with its expiry."""
    value: Any
    cached_at: float
    expires_at: float

    def is_expired(self, now: Optional[float] = None) -> bool:
        """Check if entry has expired."""
        return (now if now is not None else time.time()) > self.expires_at


# =============================================================================
# PROCESS-LEVEL CACHE (LRU with TTL)
# =============================================================================

class TTLCache:
    """
    Thread-safe LRU cache with TTL expiration.

    Provides process-level caching without Redis dependency.
    """

    def __init__(
        self,
        maxsize: int = 1000,
        ttl_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.maxsize = maxsize
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: Dict[str, CacheEntry] = {}
        self._access_order: List[str] = []
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[Any]:
        """Get a live value from cache."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None

            if entry.is_expired(self._clock()):
                self._remove(key)
                return None

            # Move to end (LRU)
            if key in self._access_order:
                self._access_order.remove(key)
            self._access_order.append(key)

            return entry.value

    def set(self, key: str, value: Any) -> None:
        """Set value in cache."""
        now = self._clock()
        with self._lock:
            while len(self._cache) >= self.maxsize and key not in self._cache:
                if self._access_order:
                    oldest = self._access_order.pop(0)
                    self._cache.pop(oldest, None)
                else:
                    break

            self._cache[key] = CacheEntry(value=value, cached_at=now, expires_at=now + self.ttl_seconds)
            if key not in self._access_order:
                self._access_order.append(key)

    def invalidate(self, key: str) -> None:
        """Remove entry from cache."""
        with self._lock:
            self._remove(key)

    def invalidate_prefix(self, prefix: str) -> int:
        """Remove all entries matching prefix."""
        with self._lock:
            keys_to_remove = [k for k in self._cache if k.startswith(prefix)]
            for key in keys_to_remove:
                self._remove(key)
            return len(keys_to_remove)

    def clear(self) -> int:
        """Clear all entries."""
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
            self._access_order.clear()
            return count

    def _remove(self, key: str) -> None:
        """Remove a key (must hold lock)."""
        self._cache.pop(key, None)
        if key in self._access_order:
            self._access_order.remove(key)

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            return {
                "size": len(self._cache),
                "maxsize": self.maxsize,
                "ttl_seconds": self.ttl_seconds,
            }


# =============================================================================
# REDIS CACHE ADAPTER
# =============================================================================

class RedisCacheAdapter:
    """
    Redis cache adapter for distributed caching.

    Values are stored as JSON; ``encode`` turns a cached value into a
    JSON-safe structure and ``decode`` rebuilds it. Optional - errors are
    logged and treated as misses so the caller recomputes from the store.
    """

    def __init__(
        self,
        redis_client: Any = None,
        prefix: str = "rbac:perms:",
        ttl_seconds: int = 300,
        encode: Callable[[Any], Any] = _identity,
        decode: Callable[[Any], Any] = _identity,
    ):
        self.redis = redis_client
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds
        self._encode = encode
        self._decode = decode
        self._enabled = redis_client is not None

    @property
    def enabled(self) -> bool:
        return self._enabled

    def get(self, key: str) -> Optional[Any]:
        if not self._enabled:
            return None

        try:
            data = self.redis.get(f"{self.prefix}{key}")
            if data:
                return self._decode(json.loads(data))
        except Exception as e:
            logger.warning(f"Redis get error: {e}")

        return None

    def set(self, key: str, value: Any) -> None:
        if not self._enabled:
            return

        try:
            data = json.dumps(self._encode(value))
            self.redis.setex(f"{self.prefix}{key}", self.ttl_seconds, data)
        except Exception as e:
            logger.warning(f"Redis set error: {e}")

    def invalidate_pattern(self, pattern: str) -> int:
        """Remove entries matching pattern."""
        if not self._enabled:
            return 0

        try:
            keys = list(self.redis.scan_iter(match=f"{self.prefix}{pattern}"))
            if keys:
                return self.redis.delete(*keys)
        except Exception as e:
            logger.warning(f"Redis pattern delete error: {e}")

        return 0


# =============================================================================
# RESOLVED PERMISSION CACHE
# =============================================================================

class PermissionCache:
    """
    Cache of resolved permission maps.

    Cache keys: "user:{user_id}:state:{state}:campus:{campus}"
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        redis_client: Any = None,
        clock: Callable[[], float] = time.time,
        encode: Callable[[Any], Any] = _identity,
        decode: Callable[[Any], Any] = _identity,
    ):
        self.config = config or CacheConfig()
        self._process_cache = TTLCache(
            maxsize=self.config.process_cache_size,
            ttl_seconds=self.config.process_cache_ttl_seconds,
            clock=clock,
        )
        self._redis_cache = RedisCacheAdapter(
            redis_client=redis_client,
            prefix=self.config.redis_prefix,
            ttl_seconds=self.config.redis_cache_ttl_seconds,
            encode=encode,
            decode=decode,
        ) if redis_client is not None else None

    @staticmethod
    def get_cache_key(
        user_id: str,
        state_id: Optional[str] = None,
        campus_id: Optional[str] = None,
    ) -> str:
        return f"user:{user_id}:state:{state_id or '-'}:campus:{campus_id or '-'}"

    def get(self, user_id: str, state_id: Optional[str] = None, campus_id: Optional[str] = None) -> Optional[Any]:
        key = self.get_cache_key(user_id, state_id, campus_id)

        value = self._process_cache.get(key)
        if value is not None:
            return value

        if self._redis_cache and self._redis_cache.enabled:
            value = self._redis_cache.get(key)
            if value is not None:
                self._process_cache.set(key, value)
                return value

        return None

    def set(self, user_id: str, value: Any, state_id: Optional[str] = None, campus_id: Optional[str] = None) -> None:
        key = self.get_cache_key(user_id, state_id, campus_id)
        self._process_cache.set(key, value)
        if self._redis_cache and self._redis_cache.enabled:
            self._redis_cache.set(key, value)

    def invalidate_user(self, user_id: str) -> int:
        """Invalidate all cache entries for a user."""
        prefix = f"user:{user_id}:"
        count = self._process_cache.invalidate_prefix(prefix)

        if self._redis_cache and self._redis_cache.enabled:
            count += self._redis_cache.invalidate_pattern(f"{prefix}*")

        logger.debug(f"Invalidated {count} permission cache entries for user {user_id}")
        return count

    def invalidate_global(self) -> int:
        """Invalidate all cache entries."""
        count = self._process_cache.clear()

        if self._redis_cache and self._redis_cache.enabled:
            count += self._redis_cache.invalidate_pattern("*")

        logger.info(f"Invalidated all resolved permission cache entries ({count})")
        return count

    def stats(self) -> Dict[str, Any]:
        return {
            "process_cache": self._process_cache.stats(),
            "redis_enabled": self._redis_cache.enabled if self._redis_cache else False,
        }


# =============================================================================
# INVALIDATION HOOK
# =============================================================================

class InvalidationHub:
    """
    Fan-out point for cache invalidation.

    Catalog and user mutations call ``notify``; caches register listeners
    at core construction time. With a Redis client the hub also publishes
    each local notification so other workers can drop their process-level
    entries; messages received from other workers come in through
    ``deliver`` and are not re-published.
    """

    def __init__(self, redis_client: Any = None, channel: str = "rbac:invalidate"):
        self._listeners: List[Callable[[str, Optional[str]], None]] = []
        self._lock = threading.Lock()
        self.redis = redis_client
        self.channel = channel
        self.origin = uuid.uuid4().hex

    def subscribe(self, listener: Callable[[str, Optional[str]], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def notify(self, scope: str, scope_id: Optional[str] = None) -> None:
        """scope is 'global' for role/permission/mapping changes, 'user' for one user."""
        self.deliver(scope, scope_id)
        self._publish(scope, scope_id)

    def deliver(self, scope: str, scope_id: Optional[str] = None) -> None:
        """Run the local listeners only."""
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(scope, scope_id)
            except Exception as e:
                logger.error(f"Cache invalidation listener failed: {e}")

    def _publish(self, scope: str, scope_id: Optional[str]) -> None:
        if self.redis is None:
            return
        try:
            message = json.dumps({"scope": scope, "scope_id": scope_id, "origin": self.origin, "ts": time.time()})
            self.redis.publish(self.channel, message)
        except Exception as e:
            logger.warning(f"Redis publish error: {e}")

    def handle_message(self, data: Any) -> bool:
        """
        Apply one pub/sub payload from another worker.

        Returns True when local listeners ran. Own messages and malformed
        payloads are ignored.
        """
        try:
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            message = json.loads(data)
            scope = message["scope"]
        except (TypeError, ValueError, KeyError) as e:
            logger.warning(f"Ignoring malformed invalidation message: {e}")
            return False

        if message.get("origin") == self.origin:
            return False
        self.deliver(scope, message.get("scope_id"))
        return True


class InvalidationListener:
    """
    Background subscriber that feeds other workers' invalidations into a hub.

    Runs a daemon thread polling the hub's Redis channel; ``stop`` closes
    the subscription.
    """

    def __init__(self, hub: InvalidationHub, poll_timeout: float = 1.0):
        if hub.redis is None:
            raise ValueError("InvalidationListener requires a hub with a Redis client")
        self.hub = hub
        self.poll_timeout = poll_timeout
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._pubsub = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._pubsub = self.hub.redis.pubsub(ignore_subscribe_messages=True)
        self._pubsub.subscribe(self.hub.channel)
        self._thread = threading.Thread(target=self._run, name="rbac-invalidation", daemon=True)
        self._thread.start()
        logger.info(f"Listening for cache invalidations on {self.hub.channel}")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        if self._pubsub is not None:
            try:
                self._pubsub.close()
            except Exception as e:
                logger.warning(f"Error closing invalidation subscription: {e}")
            self._pubsub = None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                message = self._pubsub.get_message(timeout=self.poll_timeout)
            except Exception as e:
                logger.warning(f"Invalidation subscription error: {e}")
                self._stop.wait(self.poll_timeout)
                continue
            if isinstance(message, dict) and message.get("type") == "message":
                self.hub.handle_message(message.get("data"))
            elif message is not None:
                # Subscribe confirmations or clients without a blocking timeout
                self._stop.wait(0.05)
