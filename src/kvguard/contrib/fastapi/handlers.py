"""Exception handlers for rate limiting in FastAPI applications.

This module converts rate limit rejections into HTTP 429 Too Many Requests
responses with a JSON body and rate limit headers.
"""

import logging

from starlette.requests import Request
from starlette.responses import JSONResponse

from kvguard.contrib.fastapi.headers import get_rate_limit_headers
from kvguard.schemas import AdmissionResult

logger = logging.getLogger(__name__)


def rate_limit_body(limit: int, window_seconds: int) -> dict[str, str]:
    """Return the JSON body of a 429 response."""
    return {
        "error": "Rate limit exceeded",
        "message": f"Too many requests. Limit: {limit} requests per {window_seconds} seconds",
    }


class RateLimitExceededError(Exception):
    """Exception raised when a rate limit is exceeded.

    Raised by the rate limit dependency and converted into an HTTP 429
    response by ``rate_limit_exception_handler``.

    Attributes:
        identifier: Caller identity that hit the limit
        result: Admission result of the rejected request
        scope: Rate limit scope that was exceeded

    Example:
        >>> raise RateLimitExceededError("192.168.1.1", result, scope="api")
    """

    def __init__(self, identifier: str, result: AdmissionResult, scope: str | None = None) -> None:
        self.identifier = identifier
        self.result = result
        self.scope = scope
        super().__init__(
            f"Rate limit exceeded for {identifier}: "
            f"{result.count}/{result.limit} per {result.window_seconds}s "
            f"(retry in {result.retry_after}s)"
        )

    @property
    def limit(self) -> int:
        return self.result.limit

    @property
    def window_seconds(self) -> int:
        return self.result.window_seconds

    @property
    def retry_after(self) -> int:
        return self.result.retry_after


async def rate_limit_exception_handler(
    _request: Request,
    exc: RateLimitExceededError,
) -> JSONResponse:
    """FastAPI exception handler for rate limit errors.

    Response format:
        {
            "error": "Rate limit exceeded",
            "message": "Too many requests. Limit: 100 requests per 3600 seconds"
        }

    Headers:
        - X-RateLimit-Limit: Maximum requests per window
        - X-RateLimit-Remaining: Requests remaining (0)
        - X-RateLimit-Reset: Unix timestamp of reset
        - Retry-After: Seconds to wait

    Example:
        >>> app = FastAPI()
        >>> app.add_exception_handler(RateLimitExceededError, rate_limit_exception_handler)
    """
    logger.warning(
        "Rate limit exceeded: identifier=%s, scope=%s, limit=%d, retry_after=%ds",
        exc.identifier,
        exc.scope or "unknown",
        exc.limit,
        exc.retry_after,
    )
    return create_rate_limit_response(exc.result)


def create_rate_limit_response(
    result: AdmissionResult,
    identifier: str | None = None,
    scope: str | None = None,
) -> JSONResponse:
    """Create a 429 response from a rejected AdmissionResult.

    Useful in middleware, where raising would bypass exception handlers.

    Args:
        result: The rejected admission
        identifier: Optional caller identity for logging
        scope: Optional scope for logging
    """
    if identifier:
        logger.warning(
            "Rate limit exceeded: identifier=%s, scope=%s, limit=%d",
            identifier,
            scope or "unknown",
            result.limit,
        )

    return JSONResponse(
        status_code=429,
        content=rate_limit_body(result.limit, result.window_seconds),
        headers=get_rate_limit_headers(result),
    )


__all__ = [
    "RateLimitExceededError",
    "create_rate_limit_response",
    "rate_limit_body",
    "rate_limit_exception_handler",
]
