"""
Principal Middleware - carries the authenticated user id into request.state.

Token validation happens upstream (API gateway / auth service), which
forwards the caller's id in the X-User-Id header. This middleware only
parses it; permissions are resolved later by get_access_context.
"""

from dataclasses import dataclass, field
from typing import Callable, Optional, Set
from uuid import UUID
import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

logger = logging.getLogger(__name__)


@dataclass
class PrincipalMiddlewareConfig:
    """Configuration for PrincipalMiddleware."""
    user_header: str = "X-User-Id"

    # Paths served without a principal
    public_paths: Set[str] = field(default_factory=lambda: {
        "/",
        "/health",
        "/docs",
        "/redoc",
        "/openapi.json",
    })


class PrincipalMiddleware(BaseHTTPMiddleware):
    """Sets request.state.user_id (None when absent) and request.state.request_id."""

    def __init__(self, app: ASGIApp, config: Optional[PrincipalMiddlewareConfig] = None):
        super().__init__(app)
        self.config = config or PrincipalMiddlewareConfig()

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.request_id = request.headers.get("X-Request-ID", f"req_{int(time.time() * 1000)}")
        request.state.user_id = None

        if request.url.path in self.config.public_paths:
            return await call_next(request)

        raw = request.headers.get(self.config.user_header)
        if raw:
            try:
                request.state.user_id = UUID(raw)
            except ValueError:
                logger.warning(f"Malformed {self.config.user_header} header on {request.url.path}")
                return JSONResponse(
                    status_code=401,
                    content={
                        "error": "unauthenticated",
                        "message": "Malformed user identity",
                        "request_id": request.state.request_id,
                    },
                )

        return await call_next(request)
