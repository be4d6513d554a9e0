"""Rate limiting middleware.

Turns rate limit verdicts into HTTP responses: 429 with Retry-After on
denial, X-RateLimit-* headers describing remaining quota otherwise.
"""

import hashlib
import math
from typing import Callable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from quotaguard.app.core.config import settings
from quotaguard.app.core.logging import get_logger
from quotaguard.app.services.rate_limit import (
    RateLimitResult,
    RateLimitService,
    get_rate_limit_service,
)

logger = get_logger(__name__)

MAX_API_KEY_LENGTH = 512
DEFAULT_EXEMPT_PATHS = ("/health", "/metrics", "/stats", "/docs", "/openapi.json")
_PATH_PREFIXES = ("api", "v1")


def get_client_identifier(
    request: Request,
    trust_forwarded_for: Optional[bool] = None,
    trust_api_keys: Optional[bool] = None,
) -> str:
    """Get the rate limit identity for the request.

    Uses the API key when API keys are trusted, otherwise the client IP.
    The IP comes from X-Forwarded-For only when the deployment trusts its
    proxy to set that header; otherwise the socket peer address is used.
    Both are hashed using SHA-256 so raw keys never reach the store or the
    logs.
    """
    if trust_forwarded_for is None:
        trust_forwarded_for = settings.rate_limit_trust_forwarded_for
    if trust_api_keys is None:
        trust_api_keys = settings.rate_limit_trust_api_keys

    auth = request.headers.get("Authorization", "")
    if trust_api_keys and auth.startswith("Bearer "):
        api_key = auth[7:].strip()
        if api_key:
            # Bound hashing cost for absurdly long headers
            api_key = api_key[:MAX_API_KEY_LENGTH]
            key_hash = hashlib.sha256(api_key.encode()).hexdigest()[:32]
            return f"apikey-{key_hash}"

    client_ip = request.client.host if request.client else "unknown"
    forwarded = request.headers.get("X-Forwarded-For")
    if trust_forwarded_for and forwarded:
        client_ip = forwarded.split(",")[0].strip() or client_ip

    ip_hash = hashlib.sha256(client_ip.encode()).hexdigest()[:32]
    return f"ip-{ip_hash}"


def endpoint_tag(path: str) -> Optional[str]:
    """Map a request path to the endpoint tag policies are keyed on.

    The tag is the first path segment after an optional /api or /v1
    prefix: /api/query/run -> "query", /v1/login -> "login".
    """
    segments = [s for s in path.split("/") if s]
    while segments and segments[0].lower() in _PATH_PREFIXES:
        segments = segments[1:]
    return segments[0].lower() if segments else None


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(result.request_limit),
        "X-RateLimit-Remaining": str(result.remaining if result.is_allowed else 0),
        "X-RateLimit-Reset": str(math.ceil(result.reset_time)),
        "X-RateLimit-Policy": result.base_policy_name,
    }
    if not result.is_allowed:
        headers["Retry-After"] = str(max(1, math.ceil(result.retry_after)))
    return headers


def rate_limit_exceeded_response(result: RateLimitResult) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limit_exceeded",
            "message": "Rate limit exceeded. Please try again later.",
            "policy": result.base_policy_name,
            "retry_after": math.ceil(result.retry_after),
        },
        headers=rate_limit_headers(result),
    )


def _most_constraining(results: dict[str, RateLimitResult]) -> RateLimitResult:
    # A denial short-circuits, so it is always the last entry
    last = next(reversed(results.values()))
    if not last.is_allowed:
        return last
    return min(results.values(), key=lambda r: r.remaining)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce rate limits on requests.

    Rate limits are applied per API key if available, otherwise per IP,
    using every policy tagged with the request's endpoint. Requests to
    endpoints without a policy pass through unchecked.
    """

    def __init__(
        self,
        app,
        service: Optional[RateLimitService] = None,
        exempt_paths: tuple[str, ...] = DEFAULT_EXEMPT_PATHS,
        identifier_func: Callable[[Request], str] = get_client_identifier,
    ):
        super().__init__(app)
        self._service = service
        self._exempt_paths = exempt_paths
        self._identifier_func = identifier_func

    @property
    def service(self) -> RateLimitService:
        return self._service if self._service is not None else get_rate_limit_service()

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        path = request.url.path
        tag = endpoint_tag(path)
        if tag is None or any(path.startswith(p) for p in self._exempt_paths):
            return await call_next(request)

        identifier = self._identifier_func(request)
        results = await self.service.check_endpoint(identifier, tag)
        if not results:
            return await call_next(request)

        result = _most_constraining(results)
        if not result.is_allowed:
            return rate_limit_exceeded_response(result)

        response = await call_next(request)
        response.headers.update(rate_limit_headers(result))
        return response


def rate_limited(endpoint_or_policy: str) -> Callable:
    """FastAPI dependency enforcing one policy on a single route.

    Denials raise RateLimitExceededError, rendered as 429 by the
    application's exception handler.

    Example:
        @router.post("/login", dependencies=[Depends(rate_limited("login"))])
    """

    async def dependency(request: Request) -> RateLimitResult:
        service = get_rate_limit_service()
        return await service.enforce(get_client_identifier(request), endpoint_or_policy)

    return dependency
