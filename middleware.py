"""
HTTP middleware: request id tracing and fixed-window rate limiting.
"""

import secrets
import time
from typing import Callable, Dict, Tuple

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

logger = structlog.get_logger()


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tag every request with an id, bound into the structlog context."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or secrets.token_hex(8)
        request.state.request_id = request_id
        structlog.contextvars.bind_contextvars(request_id=request_id)

        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
        response.headers["X-Request-ID"] = request_id
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    In-memory fixed-window limiter keyed by client IP and route group.

    Requests under ``/api/auth`` count against the (tighter) auth budget,
    everything else under ``/api`` against the general one. Paths outside
    ``/api`` are not limited.
    """

    def __init__(
        self,
        app: ASGIApp,
        window_seconds: int = 15 * 60,
        api_limit: int = 100,
        auth_limit: int = 10,
        sweep_threshold: int = 10_000,
    ):
        super().__init__(app)
        self.window_seconds = window_seconds
        self.api_limit = api_limit
        self.auth_limit = auth_limit
        self.sweep_threshold = sweep_threshold
        # (ip, group) -> (window start, count)
        self._windows: Dict[Tuple[str, str], Tuple[float, int]] = {}

    def _get_client_ip(self, request: Request) -> str:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    def _group_for(self, path: str):
        if path.startswith("/api/auth"):
            return "auth", self.auth_limit
        if path.startswith("/api"):
            return "api", self.api_limit
        return None, None

    def cleanup(self, now: float) -> int:
        expired = [k for k, (start, _) in self._windows.items() if now - start >= self.window_seconds]
        for k in expired:
            del self._windows[k]
        return len(expired)

    def _hit(self, key: Tuple[str, str], limit: int) -> Tuple[bool, int]:
        now = time.time()
        if len(self._windows) >= self.sweep_threshold:
            self.cleanup(now)
        start, count = self._windows.get(key, (now, 0))
        if now - start >= self.window_seconds:
            start, count = now, 0
        if count >= limit:
            return True, int(start + self.window_seconds - now) + 1
        self._windows[key] = (start, count + 1)
        return False, 0

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        group, limit = self._group_for(request.url.path)
        if group is None:
            return await call_next(request)

        client_ip = self._get_client_ip(request)
        limited, retry_after = self._hit((client_ip, group), limit)
        if limited:
            logger.warning(
                "Rate limit exceeded",
                client_ip=client_ip,
                path=request.url.path,
                retry_after=retry_after,
            )
            message = (
                "Too many authentication attempts, please try again later."
                if group == "auth"
                else "Too many requests from this IP, please try again later."
            )
            return JSONResponse(
                {"message": message},
                status_code=429,
                headers={"Retry-After": str(retry_after)},
            )

        return await call_next(request)
