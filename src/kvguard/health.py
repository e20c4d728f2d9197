"""Store health check."""

import logging
import time

from kvguard.core import StoreClient
from kvguard.exceptions import StoreUnavailableError
from kvguard.schemas import HealthStatus

logger = logging.getLogger(__name__)


async def check_health(store: StoreClient) -> HealthStatus:
    """Ping the store and report whether it answered.

    Never raises for transport failures; they are reported in the result.

    Returns:
        HealthStatus with the round-trip latency when healthy, or the error
    """
    started = time.perf_counter()
    try:
        answered = await store.ping()
    except StoreUnavailableError as e:
        logger.warning("Store health check failed (engine=%s): %s", store.engine, e)
        return HealthStatus(healthy=False, error=str(e))

    latency_ms = (time.perf_counter() - started) * 1000
    if not answered:
        return HealthStatus(healthy=False, latency_ms=latency_ms, error="store did not answer")
    return HealthStatus(healthy=True, latency_ms=latency_ms)
