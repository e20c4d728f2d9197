"""Global test configuration and fixtures for kv-guard.

Behavioural tests run against the in-memory store with a controllable clock;
the Redis store client is tested with a mocked driver (see test_redis_store).
"""

from __future__ import annotations

import pytest

from kvguard import GuardConfig, KVGuard, MemoryStore, MemoryStoreConfig


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def store(clock: FakeClock):
    """Connected in-memory store driven by the fake clock."""
    memory_store = MemoryStore(clock=clock)
    await memory_store.connect()
    yield memory_store
    await memory_store.close()


@pytest.fixture
async def guard(store: MemoryStore):
    """Guard over the in-memory store with default settings."""
    kv_guard = KVGuard(store, GuardConfig(store=MemoryStoreConfig()))
    yield kv_guard
    await kv_guard.close()
