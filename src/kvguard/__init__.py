"""kv-guard: Redis-backed rate limiting, response caching, sessions and notifications.

This package provides a small middleware layer on top of a key-value store:

- Fixed-window rate limiting per (scope, identity), fail-open when the store
  is unreachable
- Read-through response caching with key and pattern invalidation, treating
  store failures as misses
- JSON session documents with TTL
- Best-effort publish/subscribe notifications with ordered in-process handlers
- A store health check
- FastAPI integration and optional Prometheus metrics under ``kvguard.contrib``

Basic example:
    >>> from kvguard import GuardConfig, KVGuard
    >>>
    >>> async with KVGuard.from_config(GuardConfig()) as guard:
    ...     if not await guard.limiter.admit("api", "10.0.0.1", limit=50, window_seconds=3600):
    ...         raise TooManyRequests()
    ...     items = await guard.cache.get_or_produce("GET /items", fetch_items, ttl_seconds=60)
    ...     await guard.sessions.save("abc123", {"user_id": 42})
    ...     await guard.channel.publish("user_updates", {"user_id": 42})

Configuration file example:
    >>> guard = KVGuard.from_config_file("kvguard.toml")
    >>> await guard.connect()
    >>> try:
    ...     ...
    ... finally:
    ...     await guard.close()
"""

from kvguard import testing
from kvguard.cache import ResponseCache, cached
from kvguard.channel import MessageHandler, NotificationChannel
from kvguard.config import find_config_path, load_config, load_default_config, parse_config
from kvguard.core import GuardMetrics, StoreClient
from kvguard.exceptions import (
    ConfigValidationError,
    KVGuardError,
    SerializationError,
    StoreNotConnectedError,
    StoreTimeoutError,
    StoreUnavailableError,
)
from kvguard.guard import KVGuard
from kvguard.health import check_health
from kvguard.keys import derive_cache_key, hash_identifier
from kvguard.ratelimit import RateLimiter
from kvguard.schemas import (
    AdmissionResult,
    CacheLookup,
    CacheSettings,
    GuardConfig,
    HealthStatus,
    MemoryStoreConfig,
    RateLimitPolicy,
    RateLimitSettings,
    RedisStoreConfig,
    SessionSettings,
)
from kvguard.session import SessionStore
from kvguard.stores import MemoryBroker, MemoryStore, RedisStore, create_store

__version__ = "1.0.0"

__all__ = [
    # Version
    "__version__",
    # Guard and components
    "KVGuard",
    "RateLimiter",
    "ResponseCache",
    "SessionStore",
    "NotificationChannel",
    "MessageHandler",
    "cached",
    "check_health",
    # Store clients
    "StoreClient",
    "RedisStore",
    "MemoryStore",
    "MemoryBroker",
    "create_store",
    # Configuration
    "GuardConfig",
    "RedisStoreConfig",
    "MemoryStoreConfig",
    "RateLimitPolicy",
    "RateLimitSettings",
    "CacheSettings",
    "SessionSettings",
    "load_config",
    "load_default_config",
    "parse_config",
    "find_config_path",
    # Result types
    "AdmissionResult",
    "CacheLookup",
    "HealthStatus",
    "GuardMetrics",
    # Key helpers
    "derive_cache_key",
    "hash_identifier",
    # Testing utilities
    "testing",
    # Exceptions
    "KVGuardError",
    "StoreUnavailableError",
    "StoreTimeoutError",
    "StoreNotConnectedError",
    "SerializationError",
    "ConfigValidationError",
]
