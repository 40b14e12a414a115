"""
Starlette middleware that rate-limits identity-bound routes.

Requests under `path_prefix` are counted per identity (the user id header,
falling back to the client address). Once an identity exceeds
`max_attempts` within `window`, the request is answered with the sanitized
RATE_LIMIT_EXCEEDED body and HTTP 429 without reaching the route.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Callable, Optional, Sequence

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..errors import RateLimitExceededError
from ..services.rate_limiter import RateLimiter
from .errors import error_response


logger = logging.getLogger(__name__)


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: Any,
        limiter: RateLimiter,
        *,
        path_prefix: str = "/credits/checkout",
        user_id_header: str = "X-User-Id",
        max_attempts: int = 3,
        window: timedelta = timedelta(minutes=60),
        methods: Sequence[str] = ("POST",),
        skip_paths: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(app)
        self.limiter = limiter
        self.path_prefix = path_prefix.rstrip("/")
        self.user_id_header = user_id_header
        self.max_attempts = max_attempts
        self.window = window
        self.methods = {m.upper() for m in methods}
        self.skip_paths = tuple(skip_paths or ())

    def _should_apply(self, request: Request) -> bool:
        path = request.url.path
        if request.method.upper() not in self.methods:
            return False
        if not path.startswith(self.path_prefix + "/") and path != self.path_prefix:
            return False
        for skip in self.skip_paths:
            if path == skip or path.startswith(skip.rstrip("/") + "/"):
                return False
        return True

    def _identity(self, request: Request) -> Optional[str]:
        user_id = request.headers.get(self.user_id_header)
        if user_id:
            return f"user:{user_id}"
        if request.client is not None:
            return f"ip:{request.client.host}"
        return None

    async def dispatch(self, request: Request, call_next: Callable[[Request], Any]) -> Response:
        if not self._should_apply(request):
            return await call_next(request)

        identity = self._identity(request)
        if identity is None:
            return await call_next(request)

        if await self.limiter.check(identity, self.max_attempts, self.window):
            logger.warning(
                "Rate limit exceeded on %s",
                request.url.path,
                extra={"identity": identity, "max_attempts": self.max_attempts},
            )
            return error_response(RateLimitExceededError())
        return await call_next(request)
