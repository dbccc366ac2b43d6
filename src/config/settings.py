"""Application settings using Pydantic Settings.

Centralized configuration for the lodge authorization and security core.

SECURITY: Production requires the following environment variables:
- APP_SECRET_KEY: Main application secret (min 32 chars)
- SECURITY_JWT_SECRET: Session token signing key (min 32 chars)
- AUDIT_HMAC_KEY: Audit entry signing key (min 32 chars)

Generate secrets with: python -c "import secrets; print(secrets.token_hex(32))"
"""

import os
import sys
import logging
from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class RedisSettings(BaseSettings):
    """Redis configuration for shared counters, cache and MFA session flags."""

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        extra="ignore",
    )

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    db: int = Field(default=0, description="Redis database number")
    password: Optional[str] = Field(default=None, description="Redis password")
    ssl: bool = Field(default=False, description="Use SSL for Redis connection")

    socket_timeout: int = Field(default=1, description="Socket timeout in seconds")
    socket_connect_timeout: int = Field(default=1, description="Connection timeout")

    key_prefix: str = Field(default="lodge:", description="Prefix for all keys")

    @property
    def url(self) -> str:
        """Get Redis URL."""
        auth = f":{self.password}@" if self.password else ""
        protocol = "rediss" if self.ssl else "redis"
        return f"{protocol}://{auth}{self.host}:{self.port}/{self.db}"


class DatabaseSettings(BaseSettings):
    """Relational store for roles, permissions, mappings, users and MFA devices."""

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        extra="ignore",
    )

    url: str = Field(default="sqlite:///./lodge_security.db", description="SQLAlchemy URL")
    echo: bool = Field(default=False, description="Echo SQL statements")
    pool_pre_ping: bool = Field(default=True, description="Ping connections before use")

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")


class SecuritySettings(BaseSettings):
    """Tunables for authorization, MFA, lockout, rate limiting and audit."""

    model_config = SettingsConfigDict(
        env_prefix="SECURITY_",
        extra="ignore",
    )

    # Caches
    permission_cache_ttl_seconds: int = Field(default=300, description="Resolved permission TTL")
    role_cache_ttl_seconds: int = Field(default=600, description="Role hierarchy TTL")
    permission_cache_size: int = Field(default=1000, description="Max cached users")
    cache_invalidation_listener: bool = Field(
        default=True, description="Subscribe to other workers' invalidations when Redis is used"
    )

    # Client addresses: X-Forwarded-For is honored only from these peers
    trusted_proxies: List[str] = Field(
        default=["127.0.0.1", "::1"],
        description="Proxy addresses or CIDR ranges allowed to set X-Forwarded-For",
    )

    # Bounded waits on external collaborators
    decision_timeout_seconds: float = Field(default=2.0, description="Role/permission lookup timeout")
    audit_write_timeout_seconds: float = Field(default=2.0, description="Audit sink timeout")

    # MFA
    mfa_verification_window_minutes: int = Field(default=30, description="Session verification window")
    mfa_max_failed_attempts: int = Field(default=5, description="Failures before device lock")
    mfa_lock_minutes: int = Field(default=30, description="Device lock duration")
    totp_window: int = Field(default=2, description="Accepted time steps either side")
    backup_code_count: int = Field(default=10, description="Backup codes per device")
    totp_issuer: str = Field(default="MCAN Lodge", description="Issuer shown in authenticator apps")
    unverified_device_max_age_hours: int = Field(default=24, description="Unverified device expiry")
    mfa_required_actions: List[str] = Field(
        default=[
            "users:delete",
            "users:manage",
            "roles:create",
            "roles:update",
            "roles:delete",
            "settings:update",
            "payments:approve",
        ],
        description="resource:action pairs that always require MFA",
    )

    # Account lockout
    lockout_threshold: int = Field(default=5, description="Failed logins before lock")
    lockout_window_hours: int = Field(default=24, description="Account lock duration")

    # Persistence
    store_backend: str = Field(default="memory", description="memory or database (SQLAlchemy)")

    # Rate limiting
    rate_limit_backend: str = Field(default="memory", description="memory or redis")
    rate_limit_enabled: bool = Field(default=True, description="Enable request throttling")

    # Audit
    audit_retention_days: int = Field(default=7 * 365, description="Audit retention (7 years)")
    audit_db_path: Optional[str] = Field(default=None, description="SQLite audit file, memory if unset")

    # Session tokens
    jwt_secret: Optional[str] = Field(default=None, description="Session token signing key")
    jwt_algorithm: str = Field(default="HS256", description="Session token algorithm")
    jwt_expire_minutes: int = Field(default=480, description="Session token lifetime")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application info
    name: str = Field(default="MCAN Lodge Security Core", description="Application name")
    version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Debug mode")
    environment: str = Field(default="development", description="Environment name")

    # CRITICAL: Must be set via APP_SECRET_KEY environment variable in production
    secret_key: str = Field(
        default="change-me-in-production-INSECURE",
        description="Secret key for signing - MUST be set in production"
    )

    cors_origins: list = Field(
        default=["http://localhost:3000", "http://localhost:8000"],
        description="Allowed CORS origins"
    )

    # Nested settings (loaded separately)
    @property
    def redis(self) -> RedisSettings:
        return RedisSettings()

    @property
    def database(self) -> DatabaseSettings:
        return DatabaseSettings()

    @property
    def security(self) -> SecuritySettings:
        return SecuritySettings()

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment in ("production", "prod", "staging")

    def validate_production_security(self) -> List[str]:
        """
        Validate all security requirements for production.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if not self.is_production:
            return errors

        if "INSECURE" in self.secret_key or len(self.secret_key) < 32:
            errors.append("APP_SECRET_KEY: Must be set to at least 32 characters in production")

        jwt_secret = self.security.jwt_secret
        if not jwt_secret:
            errors.append(
                "SECURITY_JWT_SECRET: Required in production. "
                "Generate with: python -c \"import secrets; print(secrets.token_hex(32))\""
            )
        elif len(jwt_secret) < 32:
            errors.append("SECURITY_JWT_SECRET: Must be at least 32 characters")

        audit_key = os.environ.get("AUDIT_HMAC_KEY")
        if not audit_key:
            errors.append("AUDIT_HMAC_KEY: Required in production for audit integrity")
        elif len(audit_key) < 32:
            errors.append("AUDIT_HMAC_KEY: Must be at least 32 characters")

        if self.security.rate_limit_backend != "redis":
            errors.append(
                "SECURITY_RATE_LIMIT_BACKEND: Should be 'redis' so counters are shared across workers"
            )

        return errors


# =============================================================================
# STARTUP VALIDATION
# =============================================================================

class StartupSecurityError(Exception):
    """Raised when security validation fails at startup."""
    pass


def validate_startup_security(settings: Settings, exit_on_failure: bool = True) -> bool:
    """
    Validate security settings at application startup.

    In production this fails fast if critical security settings are missing.

    Raises:
        StartupSecurityError: If validation fails and exit_on_failure is False
    """
    errors = settings.validate_production_security()

    if not errors:
        if settings.is_production:
            logger.info("Production security validation PASSED")
        return True

    error_msg = (
        "\n" + "=" * 60 + "\n"
        "CRITICAL SECURITY CONFIGURATION ERROR\n"
        "=" * 60 + "\n\n"
    )
    for i, err in enumerate(errors, 1):
        error_msg += f"  {i}. {err}\n"

    logger.critical(error_msg)

    if exit_on_failure:
        print(error_msg, file=sys.stderr)
        sys.exit(1)
    else:
        raise StartupSecurityError(error_msg)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings instance.

    Returns:
        Settings: Cached settings loaded from environment.
    """
    return Settings()
