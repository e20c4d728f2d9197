"""The guard: explicit owner of the store client and the components built on it.

There is no process-wide connection. An application creates one ``KVGuard``,
connects it at startup and closes it at shutdown (or uses it as an async
context manager), and passes it, or its components, to whatever needs them.
"""

import logging
from pathlib import Path

from kvguard.cache import ResponseCache
from kvguard.channel import NotificationChannel
from kvguard.config import load_config, load_default_config
from kvguard.core import GuardMetrics, StoreClient
from kvguard.exceptions import StoreUnavailableError
from kvguard.health import check_health
from kvguard.ratelimit import RateLimiter
from kvguard.schemas import GuardConfig, HealthStatus
from kvguard.session import SessionStore
from kvguard.stores import create_store

logger = logging.getLogger(__name__)


class KVGuard:
    """Store client plus rate limiter, response cache, sessions and notifications.

    The guard owns the store client: ``close()`` releases every connection it
    opened, including the subscriber connection. The components hold
    non-owning references and each only touches its own key prefix.

    Example:
        >>> async with KVGuard.from_config(GuardConfig()) as guard:
        ...     if await guard.limiter.admit("api", user_id, 50, 3600):
        ...         profile = await guard.cache.get_or_produce(
        ...             f"profile:{user_id}", lambda: load_profile(user_id)
        ...         )
    """

    def __init__(self, store: StoreClient, config: GuardConfig | None = None) -> None:
        self._store = store
        self._config = config if config is not None else GuardConfig()
        self._metrics = GuardMetrics()

        self.limiter = RateLimiter(
            store,
            window_policy=self._config.rate_limit.window_policy,
            metrics=self._metrics,
        )
        self.cache = ResponseCache(
            store,
            default_ttl=self._config.cache.ttl_seconds,
            metrics=self._metrics,
        )
        self.sessions = SessionStore(
            store,
            default_ttl=self._config.session.ttl_seconds,
            metrics=self._metrics,
        )
        self.channel = NotificationChannel(store, metrics=self._metrics)

    @classmethod
    def from_config(cls, config: GuardConfig) -> "KVGuard":
        """Create a guard (not yet connected) with a store built from config."""
        return cls(create_store(config.store), config)

    @classmethod
    def from_config_file(cls, config_path: str | Path | None = None) -> "KVGuard":
        """Create a guard from a TOML file.

        Args:
            config_path: Path to the file; when omitted the standard
                locations are searched and defaults apply if none exists
        """
        config = load_config(config_path) if config_path is not None else load_default_config()
        return cls.from_config(config)

    @property
    def store(self) -> StoreClient:
        return self._store

    @property
    def config(self) -> GuardConfig:
        return self._config

    @property
    def metrics(self) -> GuardMetrics:
        """Return the in-process metrics shared by every component."""
        return self._metrics

    @property
    def is_connected(self) -> bool:
        return self._store.is_connected

    async def connect(self) -> None:
        """Connect the store client.

        Raises:
            StoreUnavailableError: If the store cannot be reached
        """
        await self._store.connect()
        logger.info("kv-guard ready (engine=%s)", self._store.engine)

    async def close(self) -> None:
        """Detach subscriptions and close every store connection."""
        await self.channel.close()
        await self._store.close()
        logger.info("kv-guard closed (engine=%s)", self._store.engine)

    async def health(self) -> HealthStatus:
        """Check that the store answers."""
        return await check_health(self._store)

    async def __aenter__(self) -> "KVGuard":
        try:
            await self.connect()
        except StoreUnavailableError:
            await self.close()
            raise
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
