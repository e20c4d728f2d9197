"""Identity extractors: how a request is mapped to a rate limit identity.

An extractor is any callable taking the request and returning a string,
sync or async. These cover the common rules.
"""

from collections.abc import Awaitable, Callable

from starlette.requests import Request

from kvguard.contrib.fastapi.ip_utils import get_client_ip

IdentifierExtractor = Callable[[Request], str | Awaitable[str]]


def by_client_ip(trusted_proxies: list[str] | None = None) -> IdentifierExtractor:
    """Identify callers by client IP (proxy-aware)."""

    def extract(request: Request) -> str:
        return get_client_ip(request, trusted_proxies)

    return extract


def by_user_id(
    header: str = "user-id",
    trusted_proxies: list[str] | None = None,
) -> IdentifierExtractor:
    """Identify callers by user id, falling back to client IP.

    The id is taken from ``request.state.user_id`` (set by an authentication
    layer), then from the given header.
    """

    def extract(request: Request) -> str:
        user_id = getattr(request.state, "user_id", None)
        if user_id:
            return str(user_id)
        header_value = request.headers.get(header)
        if header_value:
            return header_value
        return get_client_ip(request, trusted_proxies)

    return extract


def by_header(name: str, trusted_proxies: list[str] | None = None) -> IdentifierExtractor:
    """Identify callers by a request header (e.g. an API key), falling back to client IP."""

    def extract(request: Request) -> str:
        value = request.headers.get(name)
        return value if value else get_client_ip(request, trusted_proxies)

    return extract


__all__ = [
    "IdentifierExtractor",
    "by_client_ip",
    "by_header",
    "by_user_id",
]
