"""Rate limiting middleware.

Applies the token bucket limiter to incoming requests and attaches the
decision reporter's headers to every response.
"""

import hashlib
from typing import Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from bucketgate.app.core.logging import get_logger
from bucketgate.app.services.token_bucket import (
    DecisionReason,
    DecisionReporter,
    RateLimiter,
    get_rate_limiter,
)

logger = get_logger(__name__)

MAX_API_KEY_LENGTH = 512


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce rate limits on requests.

    Rate limits are applied per API key if available, otherwise per IP.
    Denied requests get 429, or 503 when a fail-closed limiter cannot
    reach its store.
    """

    def __init__(
        self,
        app,
        limiter: Optional[RateLimiter] = None,
        cost: Optional[float] = None,
        reporter: Optional[DecisionReporter] = None,
    ):
        super().__init__(app)
        self.limiter = limiter or get_rate_limiter()
        self.cost = cost
        self.reporter = reporter or DecisionReporter()

    def _get_client_key(self, request: Request) -> str:
        """Get rate limit key for the request.

        API keys and IP addresses are hashed with SHA-256 so raw values
        never reach the store or the logs.

        Raises:
            ValueError: If the API key is too long
        """
        auth = request.headers.get("Authorization", "")
        if auth.startswith("Bearer "):
            api_key = auth[7:].strip()
            if len(api_key) > MAX_API_KEY_LENGTH:
                raise ValueError(f"API key too long (max {MAX_API_KEY_LENGTH} characters)")
            # 32 hex chars (128 bits) for collision resistance
            key_hash = hashlib.sha256(api_key.encode()).hexdigest()[:32]
            return f"apikey:{key_hash}"

        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            client_ip = forwarded.split(",")[0].strip()
        else:
            client_ip = request.client.host if request.client else "unknown"

        ip_hash = hashlib.sha256(client_ip.encode()).hexdigest()[:32]
        return f"ip:{ip_hash}"

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        try:
            key = self._get_client_key(request)
        except ValueError as e:
            return JSONResponse(status_code=400, content={"error": "invalid_api_key", "message": str(e)})

        decision = await self.limiter.allow(key, self.cost)
        headers = self.reporter.headers(decision)

        if not decision.allowed:
            status_code = 503 if decision.reason is DecisionReason.STORE_UNAVAILABLE else 429
            return JSONResponse(
                status_code=status_code,
                content=self.reporter.error_body(decision),
                headers=headers,
            )

        response = await call_next(request)
        for name, value in headers.items():
            response.headers[name] = value
        return response
