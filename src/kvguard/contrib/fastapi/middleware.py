"""ASGI middleware for FastAPI applications.

- ``RateLimitMiddleware``: rate limits every request (or matching paths)
  without endpoint-level dependencies
- ``ResponseCacheMiddleware``: replays cached responses and captures fresh
  ones after they have been sent
- ``CacheInvalidationMiddleware``: deletes cached responses matching patterns
  after successful mutating requests
- ``SessionMiddleware``: loads the session named by a request header into
  ``request.state.session``
"""

import base64
import logging
import re
from collections.abc import Awaitable, Callable
from typing import Any

from starlette.datastructures import MutableHeaders
from starlette.requests import Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from kvguard.cache import ResponseCache
from kvguard.contrib.fastapi.dependencies import extract_identity, resolve_limit
from kvguard.contrib.fastapi.handlers import create_rate_limit_response
from kvguard.contrib.fastapi.headers import get_rate_limit_headers
from kvguard.contrib.fastapi.identity import IdentifierExtractor, by_client_ip
from kvguard.guard import KVGuard
from kvguard.keys import derive_cache_key
from kvguard.ratelimit import RateLimiter
from kvguard.schemas import AdmissionResult
from kvguard.session import SessionStore

logger = logging.getLogger(__name__)


# Type alias for path matcher
PathMatcher = Callable[[str], bool]

CacheKeyBuilder = Callable[[Request], str | Awaitable[str]]

CACHE_STATUS_HEADER = "X-Cache"

# Responses carrying these headers are never stored
_UNCACHEABLE_HEADERS = (b"set-cookie",)


def _create_path_matcher(
    include_paths: list[str] | None = None,
    exclude_paths: list[str] | None = None,
) -> PathMatcher:
    """Create a path matching function.

    Args:
        include_paths: List of regex patterns to include (if None, all paths).
        exclude_paths: List of regex patterns to exclude.

    Returns:
        Function that returns True if the middleware applies to the path.
    """
    include_patterns = [re.compile(p) for p in include_paths] if include_paths else None
    exclude_patterns = [re.compile(p) for p in exclude_paths] if exclude_paths else []

    def matcher(path: str) -> bool:
        # Excludes take precedence
        for pattern in exclude_patterns:
            if pattern.match(path):
                return False

        if include_patterns:
            return any(p.match(path) for p in include_patterns)

        return True

    return matcher


class RateLimitMiddleware:
    """ASGI middleware for rate limiting requests.

    This middleware applies rate limiting at the ASGI level, before requests
    reach endpoint handlers. Rejected requests get a 429 response directly;
    admitted ones get X-RateLimit-* headers.

    For endpoint-specific rate limiting, prefer RateLimitDependency.

    Example:
        Global limit from configuration ([rate_limit] defaults):

        >>> app.add_middleware(RateLimitMiddleware, target=guard)

        Rate limit specific paths with the "api" policy:

        >>> app.add_middleware(
        ...     RateLimitMiddleware,
        ...     target=guard,
        ...     scope="api",
        ...     include_paths=[r"^/api/.*"],
        ...     exclude_paths=[r"^/api/health$"],
        ... )
    """

    def __init__(
        self,
        app: ASGIApp,
        target: KVGuard | RateLimiter,
        scope: str = "global",
        limit: int | None = None,
        window_seconds: int | None = None,
        include_paths: list[str] | None = None,
        exclude_paths: list[str] | None = None,
        identifier_extractor: IdentifierExtractor | None = None,
        trusted_proxies: list[str] | None = None,
    ) -> None:
        """Initialize the middleware.

        Args:
            app: The ASGI application to wrap.
            target: Guard or limiter
            scope: Rate limit scope
            limit: Maximum requests per window (default: configured for scope)
            window_seconds: Window length (default: configured for scope)
            include_paths: Optional regex patterns; only matching paths are limited
            exclude_paths: Optional regex patterns; matching paths are not limited
            identifier_extractor: Request to identity mapping (default: client IP)
            trusted_proxies: Trusted proxy networks for IP extraction
        """
        self.app = app
        self.limiter, self.policy = resolve_limit(target, scope, limit, window_seconds)
        self.scope = scope
        if trusted_proxies is None and isinstance(target, KVGuard):
            trusted_proxies = target.config.trusted_proxy_networks
        self.identifier_extractor = identifier_extractor or by_client_ip(trusted_proxies)
        self._path_matcher = _create_path_matcher(include_paths, exclude_paths)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self._path_matcher(scope.get("path", "/")):
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        identifier = await extract_identity(self.identifier_extractor, request)

        result = await self.limiter.check(
            self.scope, identifier, self.policy.limit, self.policy.window_seconds
        )

        if not result.allowed:
            response = create_rate_limit_response(result, identifier=identifier, scope=self.scope)
            await response(scope, receive, send)
            return

        await self._call_with_headers(scope, receive, send, result)

    async def _call_with_headers(
        self,
        scope: Scope,
        receive: Receive,
        send: Send,
        result: AdmissionResult,
    ) -> None:
        """Call the app and inject rate limit headers into the response."""
        rate_limit_headers = get_rate_limit_headers(result)

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(raw=list(message.get("headers", [])))
                for name, value in rate_limit_headers.items():
                    headers.append(name, value)
                message["headers"] = headers.raw
            await send(message)

        await self.app(scope, receive, send_with_headers)


def _encode_entry(status: int, headers: list[tuple[bytes, bytes]], body: bytes) -> dict[str, Any]:
    return {
        "status": status,
        "headers": [[k.decode("latin-1"), v.decode("latin-1")] for k, v in headers],
        "body": base64.b64encode(body).decode("ascii"),
    }


def _decode_entry(entry: Any) -> tuple[int, list[tuple[bytes, bytes]], bytes] | None:
    try:
        headers = [(k.encode("latin-1"), v.encode("latin-1")) for k, v in entry["headers"]]
        return int(entry["status"]), headers, base64.b64decode(entry["body"])
    except (KeyError, TypeError, ValueError, AttributeError):
        return None


class ResponseCacheMiddleware:
    """ASGI middleware caching whole HTTP responses.

    A request whose method is cacheable and whose path matches is looked up
    under ``cache:<key>``, where the key defaults to
    ``derive_cache_key(method, path, query)``. A hit is replayed without
    calling the application (``X-Cache: HIT``). On a miss the application
    runs (``X-Cache: MISS``) and a complete 200 response is stored once it
    has been sent, so a slow or failing store never delays the client.

    Store failures are misses; the request proceeds uncached.

    Example:
        >>> app.add_middleware(
        ...     ResponseCacheMiddleware,
        ...     cache=guard.cache,
        ...     ttl_seconds=60,
        ...     include_paths=[r"^/api/catalog"],
        ... )
    """

    def __init__(
        self,
        app: ASGIApp,
        cache: ResponseCache,
        ttl_seconds: int | None = None,
        key_builder: CacheKeyBuilder | None = None,
        methods: tuple[str, ...] = ("GET",),
        include_paths: list[str] | None = None,
        exclude_paths: list[str] | None = None,
    ) -> None:
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be > 0, got {ttl_seconds}")
        self.app = app
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.key_builder = key_builder
        self.methods = tuple(m.upper() for m in methods)
        self._path_matcher = _create_path_matcher(include_paths, exclude_paths)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if (
            scope["type"] != "http"
            or scope["method"] not in self.methods
            or not self._path_matcher(scope.get("path", "/"))
        ):
            await self.app(scope, receive, send)
            return

        cache_key = await self._cache_key(scope, receive)

        cached = await self.cache.lookup(cache_key)
        if cached.hit:
            entry = _decode_entry(cached.value)
            if entry is not None:
                await self._replay(send, *entry)
                return
            logger.warning("Unreadable cached response under '%s', treating as miss", cache_key)

        status = 0
        headers: list[tuple[bytes, bytes]] = []
        chunks: list[bytes] = []
        complete = False

        async def capture(message: Message) -> None:
            nonlocal status, headers, complete
            if message["type"] == "http.response.start":
                status = message["status"]
                headers = list(message.get("headers", []))
                marked = MutableHeaders(raw=list(headers))
                marked.append(CACHE_STATUS_HEADER, "MISS")
                message["headers"] = marked.raw
            elif message["type"] == "http.response.body":
                chunks.append(message.get("body", b""))
                if not message.get("more_body", False):
                    complete = True
            await send(message)

        await self.app(scope, receive, capture)

        if status != 200 or not complete:
            return
        if any(name.lower() in _UNCACHEABLE_HEADERS for name, _ in headers):
            logger.debug("Not caching '%s': response sets cookies", cache_key)
            return

        await self.cache.put(
            cache_key, _encode_entry(status, headers, b"".join(chunks)), self.ttl_seconds
        )

    async def _cache_key(self, scope: Scope, receive: Receive) -> str:
        if self.key_builder is None:
            return derive_cache_key(scope["method"], scope.get("path", "/"), scope.get("query_string"))
        key = self.key_builder(Request(scope, receive))
        if not isinstance(key, str):
            key = await key
        return key

    @staticmethod
    async def _replay(send: Send, status: int, headers: list[tuple[bytes, bytes]], body: bytes) -> None:
        marked = MutableHeaders(raw=list(headers))
        marked.append(CACHE_STATUS_HEADER, "HIT")
        await send({"type": "http.response.start", "status": status, "headers": marked.raw})
        await send({"type": "http.response.body", "body": body})


class CacheInvalidationMiddleware:
    """ASGI middleware invalidating cached responses after successful writes.

    When a request with a mutating method on a matching path completes with
    a 2xx status, every cache entry matching one of ``patterns`` is deleted
    (scan then delete). Invalidation runs after the response has been sent;
    store failures are logged and never affect the response.

    Example:
        >>> app.add_middleware(
        ...     CacheInvalidationMiddleware,
        ...     cache=guard.cache,
        ...     patterns=["GET /api/items*"],
        ...     include_paths=[r"^/api/items"],
        ... )
    """

    def __init__(
        self,
        app: ASGIApp,
        cache: ResponseCache,
        patterns: list[str],
        methods: tuple[str, ...] = ("POST", "PUT", "PATCH", "DELETE"),
        include_paths: list[str] | None = None,
        exclude_paths: list[str] | None = None,
    ) -> None:
        if not patterns:
            raise ValueError("patterns cannot be empty")
        self.app = app
        self.cache = cache
        self.patterns = list(patterns)
        self.methods = tuple(m.upper() for m in methods)
        self._path_matcher = _create_path_matcher(include_paths, exclude_paths)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if (
            scope["type"] != "http"
            or scope["method"] not in self.methods
            or not self._path_matcher(scope.get("path", "/"))
        ):
            await self.app(scope, receive, send)
            return

        status = 0

        async def track_status(message: Message) -> None:
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
            await send(message)

        await self.app(scope, receive, track_status)

        if not 200 <= status < 300:
            return
        for pattern in self.patterns:
            deleted = await self.cache.invalidate_pattern(pattern)
            logger.debug(
                "Invalidated %d cache entries matching '%s' after %s %s",
                deleted,
                pattern,
                scope["method"],
                scope.get("path", "/"),
            )


class SessionMiddleware:
    """ASGI middleware loading the caller's session into ``request.state.session``.

    The session id is read from a request header. Unknown, expired or
    unreadable sessions, and store failures, leave ``request.state.session``
    unset; the request always proceeds.

    Example:
        >>> app.add_middleware(SessionMiddleware, sessions=guard.sessions)
        >>>
        >>> @app.get("/me")
        ... async def me(request: Request):
        ...     return getattr(request.state, "session", None) or {}
    """

    def __init__(self, app: ASGIApp, sessions: SessionStore, header: str = "session-id") -> None:
        self.app = app
        self.sessions = sessions
        self.header = header

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        session_id = request.headers.get(self.header)
        if session_id:
            session = await self.sessions.load(session_id)
            if session is not None:
                # request.state is backed by scope["state"], visible to the endpoint
                request.state.session = session
                request.state.session_id = session_id

        await self.app(scope, receive, send)


__all__ = [
    "CACHE_STATUS_HEADER",
    "CacheInvalidationMiddleware",
    "RateLimitMiddleware",
    "ResponseCacheMiddleware",
    "SessionMiddleware",
]
