"""
FastAPI application for the lodge security core.

Routes:
- /api/auth   : login with lockout and throttling, logout, admin unlock, password policy
- /api/authz  : permission checks, hierarchy queries, role and permission changes
- /api/mfa    : device enrollment, verification, management, admin reset
- /api/audit  : masked audit queries, statistics, export, retention sweep
- /health     : liveness

Run with:
    uvicorn web.app:get_application --factory
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config.settings import Settings, get_settings, validate_startup_security
from core.container import SERVICE_NAME, SecurityCore, build_security_core
from core.service_registry import services
from security.secure_logger import configure_secure_logging

from .audit_api import router as audit_router
from .auth_api import router as auth_router
from .authz_api import router as authz_router
from .errors import register_exception_handlers
from .mfa_api import router as mfa_router
from .middleware import RateLimitMiddleware

logger = logging.getLogger(__name__)


def create_app(
    core: Optional[SecurityCore] = None,
    settings: Optional[Settings] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> FastAPI:
    """
    Build the API around a security core.

    Args:
        core: Prebuilt core (tests); built from settings otherwise
        settings: Application settings (defaults to get_settings())
        sleep: Awaitable used for the login slow-down delay
    """
    settings = settings or (core.settings if core else get_settings())
    core = core or build_security_core(settings)
    services.register(SERVICE_NAME, core)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"{settings.name} {settings.version} starting ({settings.environment})")
        yield
        core.shutdown()
        logger.info("Audit writes drained, shutting down")

    app = FastAPI(title=settings.name, version=settings.version, lifespan=lifespan)
    app.state.security_core = core

    # Last added = first executed
    app.add_middleware(RateLimitMiddleware, sleep=sleep)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(auth_router)
    app.include_router(authz_router)
    app.include_router(mfa_router)
    app.include_router(audit_router)

    @app.get("/health")
    async def health():
        return {"status": "healthy", "service": settings.name, "version": settings.version}

    return app


def get_application() -> FastAPI:
    """Production entry point: masking log handlers and startup checks first."""
    settings = get_settings()
    configure_secure_logging(level=logging.DEBUG if settings.debug else logging.INFO)
    validate_startup_security(settings)
    return create_app(settings=settings)
