"""
Configuration schemas and result types for kv-guard.

This module defines the configuration structures using dataclasses for type safety
and clear documentation. Each store engine (Redis, Memory) defines its own config
schema; rate limiting, caching and sessions each have a settings dataclass that
validates itself on construction so that bad values are rejected at setup time.

Also includes the result types returned by the rate limiter, the cache and the
health check.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Literal

WindowPolicy = Literal["fixed", "rearm"]

WINDOW_POLICIES: tuple[str, ...] = ("fixed", "rearm")


@dataclass
class RedisStoreConfig:
    """Configuration for the Redis store client.

    Attributes:
        url: Redis connection URL (supports env var expansion via ${VAR})
             Format: redis://[:password@]host[:port][/database]
        engine: Engine identifier (always "redis")
        db: Redis database number (0-15)
        password: Optional Redis password (can also be in URL)
        pool_max_size: Maximum number of connections in the command pool
        socket_timeout: Socket timeout in seconds for Redis operations
        socket_connect_timeout: Connection timeout in seconds
        operation_timeout: Upper bound in seconds for every store operation,
            enforced on top of the socket timeouts
    """

    url: str = "redis://localhost:6379"
    engine: Literal["redis"] = "redis"
    db: int = 0
    password: str | None = None
    pool_max_size: int = 10
    socket_timeout: float = 5.0
    socket_connect_timeout: float = 5.0
    operation_timeout: float = 2.0

    def __post_init__(self) -> None:
        """Validate timeouts and pool size."""
        if self.pool_max_size <= 0:
            raise ValueError(f"pool_max_size must be > 0, got {self.pool_max_size}")
        for name in ("socket_timeout", "socket_connect_timeout", "operation_timeout"):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be > 0, got {value}")


@dataclass
class MemoryStoreConfig:
    """Configuration for the in-memory (local) store client.

    This store keeps all keys in process memory and doesn't coordinate across
    processes. Useful for development, testing, or single-process applications.

    Attributes:
        engine: Engine identifier (always "memory")
    """

    engine: Literal["memory"] = "memory"


ENGINE_SCHEMAS: dict[str, type] = {
    "redis": RedisStoreConfig,
    "memory": MemoryStoreConfig,
}


@dataclass(frozen=True, slots=True)
class RateLimitPolicy:
    """Admission policy for a rate-limited scope.

    Attributes:
        limit: Maximum admitted requests per window
        window_seconds: Window length in seconds

    Raises:
        ValueError: If limit or window_seconds is not positive

    Example:
        >>> RateLimitPolicy(limit=100, window_seconds=3600)
    """

    limit: int
    window_seconds: int

    def __post_init__(self) -> None:
        """Validate limit and window."""
        if self.limit <= 0:
            raise ValueError(f"limit must be > 0, got {self.limit}")
        if self.window_seconds <= 0:
            raise ValueError(f"window_seconds must be > 0, got {self.window_seconds}")


@dataclass
class RateLimitSettings:
    """Rate limiter settings.

    Attributes:
        window_policy: "fixed" for a strict fixed window driven by an atomic
            increment, "rearm" for the read-then-write protocol that re-applies
            the window TTL on every admitted request
        default: Policy used when no named policy is requested
        limits: Named policies, e.g. {"api": RateLimitPolicy(50, 3600)}
    """

    window_policy: WindowPolicy = "fixed"
    default: RateLimitPolicy = field(default_factory=lambda: RateLimitPolicy(100, 3600))
    limits: dict[str, RateLimitPolicy] = field(
        default_factory=lambda: {"api": RateLimitPolicy(50, 3600)}
    )

    def __post_init__(self) -> None:
        """Validate the window policy."""
        if self.window_policy not in WINDOW_POLICIES:
            raise ValueError(
                f"window_policy must be one of {WINDOW_POLICIES}, got {self.window_policy!r}"
            )

    def policy(self, name: str | None = None) -> RateLimitPolicy:
        """Return the named policy, or the default one."""
        if name is None:
            return self.default
        try:
            return self.limits[name]
        except KeyError:
            raise KeyError(f"Rate limit policy '{name}' is not configured") from None


@dataclass
class CacheSettings:
    """Response cache settings.

    Attributes:
        ttl_seconds: Default time-to-live for cache entries
        methods: HTTP methods whose responses may be cached
    """

    ttl_seconds: int = 300
    methods: tuple[str, ...] = ("GET",)

    def __post_init__(self) -> None:
        """Validate TTL and normalize methods."""
        if self.ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be > 0, got {self.ttl_seconds}")
        self.methods = tuple(m.upper() for m in self.methods)


@dataclass
class SessionSettings:
    """Session store settings.

    Attributes:
        ttl_seconds: Default time-to-live for session records
    """

    ttl_seconds: int = 3600

    def __post_init__(self) -> None:
        """Validate TTL."""
        if self.ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be > 0, got {self.ttl_seconds}")


@dataclass
class GuardConfig:
    """Top-level kv-guard configuration.

    Attributes:
        store: Store engine configuration
        rate_limit: Rate limiter settings
        cache: Response cache settings
        session: Session store settings
        trusted_proxy_networks: CIDR networks whose X-Forwarded-For headers
            are trusted (None = private network defaults)
    """

    store: RedisStoreConfig | MemoryStoreConfig = field(default_factory=RedisStoreConfig)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    session: SessionSettings = field(default_factory=SessionSettings)
    trusted_proxy_networks: list[str] | None = None


@dataclass(frozen=True, slots=True)
class CounterUpdate:
    """Outcome of an atomic counter increment.

    Attributes:
        applied: True if the counter was incremented, False if it was already
            at or above the ceiling and left untouched
        value: Counter value after the operation
    """

    applied: bool
    value: int


@dataclass(frozen=True, slots=True)
class AdmissionResult:
    """Result of a rate limit admission check.

    Attributes:
        allowed: Whether the request is admitted
        limit: Maximum admitted requests per window
        window_seconds: Window length in seconds
        count: Counter value after the check (0 when the store was unavailable)
        reset_in: Seconds until the window resets, when known

    Example:
        >>> result = await limiter.check("global", "10.0.0.1", 100, 3600)
        >>> if not result.allowed:
        ...     print(f"Retry in {result.retry_after}s")
    """

    allowed: bool
    limit: int
    window_seconds: int
    count: int
    reset_in: float | None = None

    @property
    def remaining(self) -> int:
        """Requests remaining in the current window."""
        return max(0, self.limit - self.count)

    @property
    def reset_at(self) -> int:
        """Unix timestamp when the window resets."""
        reset_in = self.reset_in if self.reset_in is not None else self.window_seconds
        return int(time.time() + reset_in)

    @property
    def retry_after(self) -> int:
        """Seconds to wait before retrying (for 429 responses)."""
        reset_in = self.reset_in if self.reset_in is not None else self.window_seconds
        return max(1, int(reset_in))


@dataclass(frozen=True, slots=True)
class CacheLookup:
    """Result of a cache read.

    A miss is distinct from a hit whose cached value is None.
    """

    hit: bool
    value: Any = None


@dataclass(frozen=True, slots=True)
class HealthStatus:
    """Result of a store health check.

    Attributes:
        healthy: True if the store answered the ping
        latency_ms: Round-trip time of the ping in milliseconds
        error: Error description when unhealthy
    """

    healthy: bool
    latency_ms: float | None = None
    error: str | None = None

    @property
    def status(self) -> str:
        """Return "connected" or "disconnected"."""
        return "connected" if self.healthy else "disconnected"
