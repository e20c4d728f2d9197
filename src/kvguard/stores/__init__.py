"""Store client implementations.

- ``RedisStore``: Redis via ``redis.asyncio`` (production)
- ``MemoryStore``: process-local store (development and tests)
"""

from kvguard.core import StoreClient
from kvguard.schemas import MemoryStoreConfig, RedisStoreConfig
from kvguard.stores.memory import MemoryBroker, MemoryStore
from kvguard.stores.redis import RedisStore


def create_store(config: RedisStoreConfig | MemoryStoreConfig) -> StoreClient:
    """Create a store client (not yet connected) for the given engine config.

    Raises:
        ValueError: If the config type is not a known engine
    """
    if isinstance(config, RedisStoreConfig):
        return RedisStore.from_config(config)
    if isinstance(config, MemoryStoreConfig):
        return MemoryStore.from_config(config)
    raise ValueError(f"Unknown store config type: {type(config).__name__}")


__all__ = [
    "MemoryBroker",
    "MemoryStore",
    "RedisStore",
    "create_store",
]
