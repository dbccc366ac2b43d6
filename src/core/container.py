"""
Security core wiring.

``build_security_core`` turns Settings into one object graph: store,
catalogs, resolver and cache, MFA enforcer, audit logger with its
monitor, decision engine, hierarchy manager, lockout, throttling and
session tokens. Every component receives the same clock so tests can
freeze time.

Backends:
- store: in-memory or SQLAlchemy (SECURITY_STORE_BACKEND)
- counters, permission cache, MFA session flags, revoked sessions: Redis
  when a client is supplied or SECURITY_RATE_LIMIT_BACKEND=redis, process
  memory otherwise; with Redis a listener thread applies other workers'
  cache invalidations
- audit: SQLite file when SECURITY_AUDIT_DB_PATH is set, memory otherwise
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import redis

from audit import AuditLogger, InMemoryAuditStorage, SecurityMonitor, SQLiteAuditStorage
from config.settings import RedisSettings, SecuritySettings, Settings, get_settings
from database import SQLAuthorizationStore, SQLDeviceStore, create_db_engine, init_db, make_session_factory
from rbac import (
    AuthorizationEngine,
    AuthorizationStore,
    CacheConfig,
    InMemoryAuthorizationStore,
    InvalidationHub,
    InvalidationListener,
    PermissionCache,
    PermissionCatalog,
    PermissionResolver,
    ResolvedPermissions,
    RoleCatalog,
    RoleHierarchyManager,
    seed_defaults,
)
from security.lockout import InMemoryAttemptCounter, LockoutManager, RedisAttemptCounter
from security.mfa import MFAEnforcer
from security.mfa_device import LockPolicy
from security.mfa_store import (
    DeviceStore,
    InMemoryDeviceStore,
    InMemorySessionVerificationStore,
    RedisSessionVerificationStore,
)
from security.rate_limiter import InMemoryRateLimiter, RedisRateLimiter, RequestThrottle
from security.tokens import (
    InMemoryRevokedSessionStore,
    RedisRevokedSessionStore,
    TokenService,
    resolve_secret,
)

from .service_registry import services

logger = logging.getLogger(__name__)

SERVICE_NAME = "security_core"


@dataclass
class SecurityCore:
    """Every security service, wired against one store and one clock."""
    settings: Settings
    security: SecuritySettings
    store: AuthorizationStore
    devices: DeviceStore
    roles: RoleCatalog
    permissions: PermissionCatalog
    resolver: PermissionResolver
    engine: AuthorizationEngine
    hierarchy: RoleHierarchyManager
    mfa: MFAEnforcer
    audit: AuditLogger
    monitor: SecurityMonitor
    lockout: LockoutManager
    throttle: RequestThrottle
    tokens: TokenService
    invalidation_listener: Optional[InvalidationListener] = None

    def shutdown(self) -> None:
        """Stop the invalidation listener and drain pending audit writes."""
        if self.invalidation_listener is not None:
            self.invalidation_listener.stop()
        self.audit.shutdown(wait_for_pending=True)


def connect_redis(settings: RedisSettings) -> Optional[Any]:
    """Open a Redis client, or None with a warning when the server is unreachable."""
    client = redis.Redis(
        host=settings.host,
        port=settings.port,
        db=settings.db,
        password=settings.password,
        ssl=settings.ssl,
        decode_responses=True,
        socket_timeout=settings.socket_timeout,
        socket_connect_timeout=settings.socket_connect_timeout,
    )
    try:
        client.ping()
    except redis.RedisError as e:
        logger.warning(f"Redis unavailable at {settings.host}:{settings.port}, using in-memory counters: {e}")
        return None
    logger.info(f"Connected to Redis at {settings.host}:{settings.port}")
    return client


def build_security_core(
    settings: Optional[Settings] = None,
    security: Optional[SecuritySettings] = None,
    redis_client: Any = None,
    session_factory: Any = None,
    clock: Callable[[], datetime] = datetime.utcnow,
    monotonic: Callable[[], float] = time.time,
    seed: bool = True,
) -> SecurityCore:
    """
    Build the security core from settings.

    Args:
        settings: Application settings (defaults to get_settings())
        security: Security settings override (defaults to settings.security)
        redis_client: Sync redis client; overrides SECURITY_RATE_LIMIT_BACKEND
        session_factory: SQLAlchemy sessionmaker; implies the database store
        clock: Wall clock for decisions, MFA windows, lockout and audit
        monotonic: Epoch-seconds clock for caches and rate limit windows
        seed: Create missing system roles, permissions and mappings
    """
    settings = settings or get_settings()
    sec = security or settings.security
    prefix = settings.redis.key_prefix

    if redis_client is None and sec.rate_limit_backend == "redis":
        redis_client = connect_redis(settings.redis)

    # Persistence
    if session_factory is None and sec.store_backend == "database":
        engine = create_db_engine(settings.database)
        init_db(engine)
        session_factory = make_session_factory(engine)

    if session_factory is not None:
        store: AuthorizationStore = SQLAuthorizationStore(session_factory)
        devices: DeviceStore = SQLDeviceStore(session_factory)
    else:
        store = InMemoryAuthorizationStore()
        devices = InMemoryDeviceStore()

    # Catalogs and resolution
    channel = f"{prefix}rbac:invalidate"
    hub = InvalidationHub(redis_client=redis_client, channel=channel)
    roles = RoleCatalog(store, hub=hub, ttl_seconds=sec.role_cache_ttl_seconds, clock=monotonic)
    permissions = PermissionCatalog(store, hub=hub)
    cache = PermissionCache(
        CacheConfig(
            process_cache_size=sec.permission_cache_size,
            process_cache_ttl_seconds=sec.permission_cache_ttl_seconds,
            redis_cache_ttl_seconds=sec.permission_cache_ttl_seconds,
            redis_prefix=f"{prefix}perms:",
            invalidation_channel=channel,
        ),
        redis_client=redis_client,
        clock=monotonic,
        encode=ResolvedPermissions.to_dict,
        decode=ResolvedPermissions.from_dict,
    )
    resolver = PermissionResolver(store, roles, cache=cache, hub=hub, clock=monotonic)

    # MFA
    window = timedelta(minutes=sec.mfa_verification_window_minutes)
    if redis_client is not None:
        sessions = RedisSessionVerificationStore(
            redis_client, window_seconds=int(window.total_seconds()), prefix=prefix
        )
    else:
        sessions = InMemorySessionVerificationStore()
    mfa = MFAEnforcer(
        store,
        devices,
        roles,
        sessions,
        verification_window=window,
        policy=LockPolicy(
            max_failed_attempts=sec.mfa_max_failed_attempts,
            lock_duration=timedelta(minutes=sec.mfa_lock_minutes),
        ),
        totp_window=sec.totp_window,
        backup_code_count=sec.backup_code_count,
        issuer=sec.totp_issuer,
        unverified_max_age=timedelta(hours=sec.unverified_device_max_age_hours),
        clock=clock,
    )

    # Audit
    if sec.audit_db_path:
        storage = SQLiteAuditStorage(sec.audit_db_path, timeout=sec.audit_write_timeout_seconds)
    else:
        storage = InMemoryAuditStorage()
    audit = AuditLogger(
        storage,
        retention_days=sec.audit_retention_days,
        write_timeout=sec.audit_write_timeout_seconds,
        clock=clock,
    )
    monitor = SecurityMonitor(audit)
    audit.monitor = monitor

    # Decisions
    engine = AuthorizationEngine(
        store,
        roles,
        resolver,
        mfa=mfa,
        audit=audit,
        decision_timeout=sec.decision_timeout_seconds,
        mfa_required_actions=sec.mfa_required_actions,
        clock=clock,
    )
    hierarchy = RoleHierarchyManager(store, roles, lookup_timeout=sec.decision_timeout_seconds)

    # Abuse prevention
    if redis_client is not None:
        counter = RedisAttemptCounter(redis_client, prefix=f"{prefix}lockout:")
        limiter = RedisRateLimiter(redis_client, key_prefix=f"{prefix}rate_limit:", clock=monotonic)
    else:
        counter = InMemoryAttemptCounter()
        limiter = InMemoryRateLimiter(clock=monotonic)
    lockout = LockoutManager(
        counter,
        threshold=sec.lockout_threshold,
        lock_duration=timedelta(hours=sec.lockout_window_hours),
        clock=clock,
    )
    throttle = RequestThrottle(limiter, enabled=sec.rate_limit_enabled)

    if redis_client is not None:
        revocations = RedisRevokedSessionStore(redis_client, prefix=prefix)
    else:
        revocations = InMemoryRevokedSessionStore()
    tokens = TokenService(
        resolve_secret(sec.jwt_secret, settings.is_production),
        algorithm=sec.jwt_algorithm,
        expire_minutes=sec.jwt_expire_minutes,
        clock=clock,
        revocations=revocations,
    )

    if seed:
        seed_defaults(store, roles, permissions)

    listener = None
    if redis_client is not None and sec.cache_invalidation_listener:
        listener = InvalidationListener(hub)
        listener.start()

    logger.info(
        f"Security core ready (store={type(store).__name__}, audit={type(storage).__name__}, "
        f"redis={'yes' if redis_client is not None else 'no'})"
    )
    return SecurityCore(
        settings=settings,
        security=sec,
        store=store,
        devices=devices,
        roles=roles,
        permissions=permissions,
        resolver=resolver,
        engine=engine,
        hierarchy=hierarchy,
        mfa=mfa,
        audit=audit,
        monitor=monitor,
        lockout=lockout,
        throttle=throttle,
        tokens=tokens,
        invalidation_listener=listener,
    )


def get_security_core() -> SecurityCore:
    """Registered core, built from settings on first use."""
    if not services.has(SERVICE_NAME):
        services.register_factory(SERVICE_NAME, build_security_core)
    return services.get(SERVICE_NAME)
