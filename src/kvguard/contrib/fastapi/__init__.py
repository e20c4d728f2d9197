"""FastAPI integration for kv-guard.

This module wires kv-guard into FastAPI applications: rate limit
dependencies and middleware, a 429 exception handler, response caching and
session middleware, an admin router and a lifespan helper.

Installation:
    The FastAPI integration requires FastAPI/Starlette to be installed.

    pip install kv-guard[fastapi]

Quick Start:
    >>> from fastapi import Depends, FastAPI
    >>> from kvguard import KVGuard
    >>> from kvguard.contrib.fastapi import (
    ...     RateLimitDependency,
    ...     RateLimitExceededError,
    ...     guard_lifespan,
    ...     rate_limit_exception_handler,
    ... )
    >>>
    >>> guard = KVGuard.from_config_file()
    >>> app = FastAPI(lifespan=guard_lifespan(guard))
    >>> app.add_exception_handler(RateLimitExceededError, rate_limit_exception_handler)
    >>>
    >>> @app.get("/api/data")
    ... async def get_data(_: None = Depends(RateLimitDependency(guard, scope="api"))):
    ...     return {"data": "value"}

Components:
    - **RateLimitDependency**: FastAPI dependency for endpoint rate limiting
    - **RateLimitMiddleware**: ASGI middleware for global/path rate limiting
    - **ResponseCacheMiddleware**: ASGI middleware caching 200 responses
    - **CacheInvalidationMiddleware**: drops cached responses after writes
    - **SessionMiddleware**: loads ``request.state.session`` from a header
    - **RateLimitExceededError** / **rate_limit_exception_handler**: 429 responses
    - **by_client_ip** / **by_user_id** / **by_header**: identity extractors
    - **create_router** / **guard_lifespan**: admin routes and lifecycle

Configuration:
    Policies for dependency and middleware scopes come from kvguard.toml:

    [rate_limit]
    limit = 100
    window_seconds = 3600

    [limits.api]
    limit = 50
    window_seconds = 3600
"""

from kvguard.contrib.fastapi.dependencies import (
    RateLimitDependency,
    rate_limit,
)
from kvguard.contrib.fastapi.handlers import (
    RateLimitExceededError,
    create_rate_limit_response,
    rate_limit_exception_handler,
)
from kvguard.contrib.fastapi.headers import (
    get_rate_limit_headers,
    set_rate_limit_headers,
)
from kvguard.contrib.fastapi.identity import (
    IdentifierExtractor,
    by_client_ip,
    by_header,
    by_user_id,
)
from kvguard.contrib.fastapi.ip_utils import (
    DEFAULT_TRUSTED_PROXY_NETWORKS,
    get_client_ip,
    validate_ip,
)
from kvguard.contrib.fastapi.middleware import (
    CacheInvalidationMiddleware,
    RateLimitMiddleware,
    ResponseCacheMiddleware,
    SessionMiddleware,
)
from kvguard.contrib.fastapi.routes import create_router, guard_lifespan

__all__ = [
    # Dependencies
    "RateLimitDependency",
    "IdentifierExtractor",
    "rate_limit",
    # Identity extractors
    "by_client_ip",
    "by_user_id",
    "by_header",
    # Handlers
    "RateLimitExceededError",
    "rate_limit_exception_handler",
    "create_rate_limit_response",
    # Headers
    "set_rate_limit_headers",
    "get_rate_limit_headers",
    # IP utilities
    "get_client_ip",
    "validate_ip",
    "DEFAULT_TRUSTED_PROXY_NETWORKS",
    # Middleware
    "RateLimitMiddleware",
    "ResponseCacheMiddleware",
    "CacheInvalidationMiddleware",
    "SessionMiddleware",
    # Routes
    "create_router",
    "guard_lifespan",
]
