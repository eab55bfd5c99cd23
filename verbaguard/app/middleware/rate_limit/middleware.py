"""HTTP integration of the rate limiter.

``RateLimitMiddleware`` applies the policy table to every request, and
``rate_limit()`` builds per-route FastAPI dependencies for routes that need a
different scope than the application default.
"""

from typing import Callable, Iterable, Optional, Union

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from verbaguard.app.core.config import settings
from verbaguard.app.core.logging import get_log_context, get_logger
from verbaguard.app.exceptions import RateLimitExceededError, rate_limit_headers
from verbaguard.app.middleware.rate_limit.identifiers import get_client_ip, get_user_id
from verbaguard.app.middleware.rate_limit.limiter import RateLimiter, get_rate_limiter
from verbaguard.app.middleware.rate_limit.models import IdentifierScope, RateLimitResult

logger = get_logger(__name__)

UserIdResolver = Callable[[Request], Optional[str]]


def rate_limit_response(exc: RateLimitExceededError) -> JSONResponse:
    """Build the 429 response for a rejected request."""
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response(),
        headers=exc.headers(),
    )


def _is_exempt(path: str, exempt_paths: Iterable[str]) -> bool:
    for exempt in exempt_paths:
        if path == exempt:
            return True
        # "/" alone exempts only the root, never the whole tree
        prefix = exempt.rstrip("/")
        if prefix and (path == prefix or path.startswith(prefix + "/")):
            return True
    return False


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce rate limits on requests.

    Each request is identified by client IP and, when the authentication
    layer has put one on ``request.state``, by user id. The endpoint path
    selects the policy. Rejected requests get a 429 with ``Retry-After``;
    allowed ones carry the X-RateLimit-* headers of the tightest limit.
    """

    def __init__(
        self,
        app,
        limiter: Optional[RateLimiter] = None,
        scope: Union[IdentifierScope, str, None] = None,
        include_global: Optional[bool] = None,
        exempt_paths: Optional[Iterable[str]] = None,
        user_id_resolver: UserIdResolver = get_user_id,
        enabled: Optional[bool] = None,
    ):
        super().__init__(app)
        self._limiter = limiter
        self.scope = IdentifierScope(scope or settings.rate_limit_scope)
        self.include_global = (
            include_global if include_global is not None else settings.rate_limit_include_global
        )
        self.exempt_paths = list(
            exempt_paths if exempt_paths is not None else settings.rate_limit_exempt_paths
        )
        self.user_id_resolver = user_id_resolver
        self.enabled = enabled if enabled is not None else settings.rate_limit_enabled

    @property
    def limiter(self) -> RateLimiter:
        # Resolved per request so a reset process limiter is picked up
        return self._limiter or get_rate_limiter()

    def _should_skip(self, request: Request) -> bool:
        if not self.enabled:
            return True
        # CORS preflights carry no credentials and must not consume quota
        if request.method == "OPTIONS":
            return True
        return _is_exempt(request.url.path, self.exempt_paths)

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        if self._should_skip(request):
            return await call_next(request)

        limiter = self.limiter
        endpoint = request.url.path
        client_ip = get_client_ip(request)
        user_id = self.user_id_resolver(request)

        result = await limiter.check_request(
            endpoint,
            client_ip,
            user_id=user_id,
            scope=self.scope,
            include_global=self.include_global,
        )

        if result is not None and not result.allowed:
            exc = RateLimitExceededError.from_result(result, limiter.now_ms())
            logger.info(
                f"Rejected {request.method} {endpoint}, retry after {exc.retry_after}s",
                extra=get_log_context(
                    client_ip=client_ip,
                    user_id=user_id,
                    path=endpoint,
                    method=request.method,
                    status_code=exc.status_code,
                ),
            )
            return rate_limit_response(exc)

        response = await call_next(request)

        if result is not None:
            response.headers.update(rate_limit_headers(result))
        return response


def rate_limit(
    scope: Union[IdentifierScope, str] = IdentifierScope.BOTH,
    include_global: bool = False,
    limiter: Optional[RateLimiter] = None,
):
    """Create a FastAPI dependency that rate limits a single route.

    Args:
        scope: Which identities to check
        include_global: Also apply the global per-user/per-IP limits
        limiter: Limiter to use (default: the process limiter)

    Returns:
        Dependency raising RateLimitExceededError on rejection

    Example:
        >>> @app.post("/api/translate", dependencies=[Depends(secure_route)])
    """
    scope = IdentifierScope(scope)

    async def dependency(request: Request, response: Response) -> Optional[RateLimitResult]:
        if not settings.rate_limit_enabled:
            return None

        active = limiter or get_rate_limiter()
        result = await active.check_request(
            request.url.path,
            get_client_ip(request),
            user_id=get_user_id(request),
            scope=scope,
            include_global=include_global,
        )
        if result is None:
            return None
        if not result.allowed:
            raise RateLimitExceededError.from_result(result, active.now_ms())

        response.headers.update(rate_limit_headers(result))
        return result

    return dependency


secure_route = rate_limit(IdentifierScope.BOTH)
public_route = rate_limit(IdentifierScope.IP)
