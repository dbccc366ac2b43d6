"""
Session tokens.

HS256 JWTs carrying the user id (``sub``) and a session id (``sid``). The
session id keys the MFA "verified at" flag, so a fresh login never
inherits an earlier session's verification.

Logout revokes the session id until the token would have expired anyway;
revocations live in process memory or Redis so every worker rejects the
token.
"""

import logging
import secrets
import threading
import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import jwt

from .exceptions import InvalidTokenError

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
JWT_EXPIRE_MINUTES = 480


def resolve_secret(secret: Optional[str], is_production: bool) -> str:
    """
    Return the configured signing key.

    SECURITY: In production the secret must be set; in development a
    random per-process secret is generated with a warning.
    """
    if not secret:
        if is_production:
            raise RuntimeError(
                "CRITICAL SECURITY ERROR: SECURITY_JWT_SECRET is required in production. "
                "Generate with: python -c \"import secrets; print(secrets.token_hex(32))\""
            )
        warnings.warn(
            "SECURITY_JWT_SECRET not set - using generated development secret.",
            UserWarning,
        )
        return f"DEV-ONLY-{secrets.token_hex(32)}"

    if len(secret) < 32:
        raise ValueError("SECURITY_JWT_SECRET must be at least 32 characters for security")
    return secret


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    session_id: str
    expires_at: datetime


# =============================================================================
# REVOKED SESSIONS
# =============================================================================

class RevokedSessionStore(ABC):
    """Session ids that must be rejected before their token expires."""

    @abstractmethod
    def revoke(self, session_id: str, until: datetime, now: datetime) -> None:
        pass

    @abstractmethod
    def is_revoked(self, session_id: str, now: datetime) -> bool:
        pass


class InMemoryRevokedSessionStore(RevokedSessionStore):
    """Revocations for single-instance deployments and tests."""

    def __init__(self):
        self._revoked: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def revoke(self, session_id: str, until: datetime, now: datetime) -> None:
        with self._lock:
            # Entries past their token expiry can never match again
            for sid in [s for s, expiry in self._revoked.items() if expiry <= now]:
                del self._revoked[sid]
            self._revoked[session_id] = until

    def is_revoked(self, session_id: str, now: datetime) -> bool:
        with self._lock:
            until = self._revoked.get(session_id)
        return until is not None and now < until


class RedisRevokedSessionStore(RevokedSessionStore):
    """Revocations shared by all workers; keys expire with the token."""

    def __init__(self, redis_client: Any, prefix: str = "lodge:"):
        self.redis = redis_client
        self.prefix = prefix

    def _key(self, session_id: str) -> str:
        return f"{self.prefix}session:revoked:{session_id}"

    def revoke(self, session_id: str, until: datetime, now: datetime) -> None:
        ttl = max(1, int((until - now).total_seconds()) + 1)
        self.redis.set(self._key(session_id), until.isoformat(), ex=ttl)

    def is_revoked(self, session_id: str, now: datetime) -> bool:
        try:
            return bool(self.redis.exists(self._key(session_id)))
        except Exception as e:
            # Fail closed: an unverifiable session is treated as revoked
            logger.error(f"Redis revocation check failed: {e}")
            return True


# =============================================================================
# TOKEN SERVICE
# =============================================================================

class TokenService:
    """Issue, decode and revoke session tokens."""

    def __init__(
        self,
        secret: str,
        algorithm: str = JWT_ALGORITHM,
        expire_minutes: int = JWT_EXPIRE_MINUTES,
        clock: Callable[[], datetime] = datetime.utcnow,
        revocations: Optional[RevokedSessionStore] = None,
    ):
        self._secret = secret
        self.algorithm = algorithm
        self.expire_minutes = expire_minutes
        self._clock = clock
        self._revocations = revocations or InMemoryRevokedSessionStore()

    def lifetime_minutes(self, max_minutes: Optional[int] = None) -> int:
        """Token lifetime, capped by a role's maximum session duration."""
        if max_minutes is not None and max_minutes > 0:
            return min(self.expire_minutes, max_minutes)
        return self.expire_minutes

    def issue(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
        max_minutes: Optional[int] = None,
    ) -> str:
        """Create a session token; a new session id is generated unless given."""
        issued_at = self._clock()
        payload: Dict[str, Any] = {
            "sub": str(user_id),
            "sid": session_id or secrets.token_urlsafe(16),
            "iat": issued_at,
            "exp": issued_at + timedelta(minutes=self.lifetime_minutes(max_minutes)),
            "type": "session",
        }
        if extra:
            payload.update(extra)
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def decode(self, token: str) -> SessionClaims:
        """
        Validate a session token.

        Raises:
            InvalidTokenError: If the token is malformed, expired, revoked or not a session token
        """
        if not token:
            raise InvalidTokenError("Authentication required")
        try:
            # Expiry is checked against the service clock below
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                options={"verify_exp": False, "verify_iat": False, "require": ["exp", "sub"]},
            )
        except jwt.InvalidTokenError:
            raise InvalidTokenError("Invalid session token")

        if payload.get("type") != "session" or not payload.get("sub") or not payload.get("sid"):
            raise InvalidTokenError("Invalid session token")

        now = self._clock()
        expires_at = datetime.fromtimestamp(payload["exp"], tz=timezone.utc).replace(tzinfo=None)
        if now >= expires_at:
            raise InvalidTokenError("Session expired")
        if self._revocations.is_revoked(payload["sid"], now):
            raise InvalidTokenError("Session revoked")

        return SessionClaims(
            user_id=payload["sub"],
            session_id=payload["sid"],
            expires_at=expires_at,
        )

    def decode_safe(self, token: Optional[str]) -> Optional[SessionClaims]:
        """Decode without raising; None if the token is invalid."""
        try:
            return self.decode(token or "")
        except InvalidTokenError:
            return None

    def revoke(self, claims: SessionClaims) -> None:
        """Reject the session's token from now until it expires."""
        self._revocations.revoke(claims.session_id, claims.expires_at, self._clock())
        logger.info(f"Session {claims.session_id} revoked for user {claims.user_id}")
