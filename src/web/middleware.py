"""
Middleware for the security API.

Provides:
- Rate limiting (general rule, per user when a valid token is present,
  per IP otherwise) with X-RateLimit-* headers and 429 + Retry-After
- Client addresses from X-Forwarded-For only behind trusted proxies
- Progressive slow-down on authentication paths
"""

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from security.exceptions import RateLimitExceededError
from security.rate_limiter import GENERAL_RULE, rate_limit_key

from .dependencies import client_ip

logger = logging.getLogger(__name__)

EXEMPT_PATHS = ("/health", "/api/health")
SLOW_DOWN_PATHS = ("/api/auth/login",)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding-window throttling over the security core's RequestThrottle.

    The limiter is shared (Redis) when the core was built with a Redis
    client; limiter errors let the request through.
    """

    def __init__(
        self,
        app,
        rule_name: str = GENERAL_RULE.name,
        slow_down_paths: Iterable[str] = SLOW_DOWN_PATHS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(app)
        self.rule_name = rule_name
        self.slow_down_paths = tuple(slow_down_paths)
        self._sleep = sleep

    def _principal(self, request: Request, core) -> Optional[str]:
        auth = request.headers.get("authorization", "")
        if not auth.lower().startswith("bearer "):
            return None
        claims = core.tokens.decode_safe(auth[7:].strip())
        return claims.user_id if claims else None

    async def dispatch(self, request: Request, call_next):
        if request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        core = request.app.state.security_core
        ip = client_ip(request)
        principal = await run_in_threadpool(self._principal, request, core)
        key = rate_limit_key(principal, ip)

        try:
            result = await run_in_threadpool(core.throttle.check, self.rule_name, key)
        except RateLimitExceededError as e:
            logger.warning(f"Rate limit exceeded for {key} on {request.url.path}")
            return JSONResponse(
                status_code=429,
                content={"success": False, "error": e.message, "code": e.code, "retryAfter": e.retry_after},
                headers={
                    "Retry-After": str(e.retry_after),
                    "X-RateLimit-Limit": str(e.limit),
                    "X-RateLimit-Remaining": "0",
                },
            )

        if request.url.path in self.slow_down_paths:
            delay = await run_in_threadpool(core.throttle.slow_down_delay, rate_limit_key(None, ip))
            if delay > 0:
                logger.info(f"Slowing down {ip} on {request.url.path} by {delay:.1f}s")
                await self._sleep(delay)

        response = await call_next(request)
        for name, value in result.headers().items():
            response.headers[name] = value
        return response
