"""FastAPI dependency injection for rate limiting.

This module provides the dependency class for rate limiting FastAPI
endpoints through the dependency injection system.
"""

import inspect
import logging

from starlette.requests import Request
from starlette.responses import Response

from kvguard.contrib.fastapi.handlers import RateLimitExceededError
from kvguard.contrib.fastapi.headers import set_rate_limit_headers
from kvguard.contrib.fastapi.identity import IdentifierExtractor, by_client_ip
from kvguard.guard import KVGuard
from kvguard.ratelimit import RateLimiter
from kvguard.schemas import RateLimitPolicy

logger = logging.getLogger(__name__)


def resolve_limit(
    target: KVGuard | RateLimiter,
    scope: str,
    limit: int | None,
    window_seconds: int | None,
) -> tuple[RateLimiter, RateLimitPolicy]:
    """Resolve the limiter and the policy for a scope.

    Explicit limit/window win. Otherwise a guard supplies the policy
    configured for the scope under ``[limits.<scope>]``, or its default.

    Raises:
        ValueError: If no policy can be resolved or the values are not positive
    """
    if isinstance(target, KVGuard):
        limiter = target.limiter
        settings = target.config.rate_limit
        try:
            configured = settings.policy(scope)
        except KeyError:
            configured = settings.default
        return limiter, RateLimitPolicy(
            limit if limit is not None else configured.limit,
            window_seconds if window_seconds is not None else configured.window_seconds,
        )

    if limit is None or window_seconds is None:
        raise ValueError(
            "limit and window_seconds are required when passing a RateLimiter; "
            "pass a KVGuard to use configured policies"
        )
    return target, RateLimitPolicy(limit, window_seconds)


async def extract_identity(extractor: IdentifierExtractor, request: Request) -> str:
    """Run an identifier extractor, sync or async."""
    identity = extractor(request)
    if inspect.isawaitable(identity):
        identity = await identity
    return identity


class RateLimitDependency:
    """FastAPI dependency for rate limiting endpoints.

    The dependency will:
    1. Extract the caller identity (default: client IP address)
    2. Check the (scope, identity) counter against the policy
    3. Set rate limit headers on the response
    4. Raise RateLimitExceededError if the limit is exceeded

    Store failures never reject a request: the limiter admits (fail-open).

    Example:
        Basic usage with default IP-based limiting:

        >>> app = FastAPI()
        >>> app.add_exception_handler(RateLimitExceededError, rate_limit_exception_handler)
        >>>
        >>> @app.get("/api/data")
        ... async def get_data(
        ...     _: None = Depends(RateLimitDependency(guard, scope="api")),
        ... ):
        ...     return {"data": "value"}

        Per-user limiting with an explicit policy:

        >>> @app.post("/api/action")
        ... async def do_action(
        ...     _: None = Depends(RateLimitDependency(
        ...         guard,
        ...         scope="action",
        ...         limit=10,
        ...         window_seconds=60,
        ...         identifier_extractor=by_user_id(),
        ...     )),
        ... ):
        ...     return {"status": "ok"}
    """

    def __init__(
        self,
        target: KVGuard | RateLimiter,
        *,
        scope: str = "global",
        limit: int | None = None,
        window_seconds: int | None = None,
        identifier_extractor: IdentifierExtractor | None = None,
        trusted_proxies: list[str] | None = None,
    ) -> None:
        """Initialize the rate limit dependency.

        Args:
            target: Guard (policies may come from its configuration) or limiter
            scope: Rate limit scope; counters are kept per (scope, identity)
            limit: Maximum requests per window (default: configured for scope)
            window_seconds: Window length (default: configured for scope)
            identifier_extractor: Callable mapping the request to an identity,
                sync or async. Defaults to the client IP.
            trusted_proxies: Trusted proxy networks for IP extraction
                (default: the guard's configured networks)

        Raises:
            ValueError: If the policy cannot be resolved or is invalid
        """
        self.limiter, self.policy = resolve_limit(target, scope, limit, window_seconds)
        self.scope = scope
        if trusted_proxies is None and isinstance(target, KVGuard):
            trusted_proxies = target.config.trusted_proxy_networks
        self.identifier_extractor = identifier_extractor or by_client_ip(trusted_proxies)

    async def __call__(self, request: Request, response: Response) -> None:
        """Execute the rate limit check.

        Raises:
            RateLimitExceededError: If the rate limit is exceeded.
        """
        identifier = await extract_identity(self.identifier_extractor, request)

        result = await self.limiter.check(
            self.scope, identifier, self.policy.limit, self.policy.window_seconds
        )

        set_rate_limit_headers(response, result)

        if not result.allowed:
            raise RateLimitExceededError(identifier, result, scope=self.scope)


def rate_limit(
    target: KVGuard | RateLimiter,
    limit: int | None = None,
    window_seconds: int | None = None,
    *,
    scope: str = "global",
    identifier_extractor: IdentifierExtractor | None = None,
) -> RateLimitDependency:
    """Factory function for creating rate limit dependencies.

    Example:
        >>> @app.get("/api/data")
        ... async def get_data(_: None = Depends(rate_limit(guard, 100, 60, scope="data"))):
        ...     return {"data": "value"}
    """
    return RateLimitDependency(
        target,
        scope=scope,
        limit=limit,
        window_seconds=window_seconds,
        identifier_extractor=identifier_extractor,
    )


__all__ = [
    "RateLimitDependency",
    "extract_identity",
    "rate_limit",
    "resolve_limit",
]
