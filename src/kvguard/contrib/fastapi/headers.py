"""Rate limit header utilities for HTTP responses.

This module sets rate limit headers following RFC 6585 and common
conventions, from the ``AdmissionResult`` returned by ``RateLimiter.check``.
"""

from starlette.responses import Response

from kvguard.schemas import AdmissionResult


def get_rate_limit_headers(result: AdmissionResult) -> dict[str, str]:
    """Get rate limit headers as a dictionary.

    Always includes X-RateLimit-Limit, X-RateLimit-Remaining and
    X-RateLimit-Reset; adds Retry-After when the request was rejected.

    Example:
        >>> result = AdmissionResult(allowed=False, limit=100, window_seconds=60, count=100, reset_in=30.0)
        >>> headers = get_rate_limit_headers(result)
        >>> headers["X-RateLimit-Remaining"]
        '0'
        >>> headers["Retry-After"]
        '30'
    """
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_at),
    }

    if not result.allowed:
        headers["Retry-After"] = str(result.retry_after)

    return headers


def set_rate_limit_headers(response: Response, result: AdmissionResult) -> None:
    """Set rate limit headers on an HTTP response."""
    for name, value in get_rate_limit_headers(result).items():
        response.headers[name] = value


__all__ = [
    "get_rate_limit_headers",
    "set_rate_limit_headers",
]
