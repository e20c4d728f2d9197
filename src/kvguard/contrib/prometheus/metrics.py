"""Prometheus metrics definitions for kv-guard.

This module defines all Prometheus metrics used by kv-guard and provides
functions to record metric values. Metrics are lazily initialized, and every
record_* function is a no-op until ``enable_metrics()`` has been called or
when prometheus-client is not installed.

Metrics:
    kvguard_admissions_total: Counter of rate limit decisions by scope and outcome
    kvguard_cache_lookups_total: Counter of cache lookups by outcome (hit/miss)
    kvguard_store_errors_total: Counter of store failures by component
    kvguard_fallbacks_total: Counter of fail-open / fail-as-miss activations
    kvguard_store_operation_duration_seconds: Histogram of store operation latencies
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

try:
    from prometheus_client import Counter as _Counter
    from prometheus_client import Histogram as _Histogram

    _PROMETHEUS_CLASSES: dict[str, Any] | None = {
        "Counter": _Counter,
        "Histogram": _Histogram,
    }
except ImportError:
    _PROMETHEUS_CLASSES = None


NAMESPACE = "kvguard"

# Store operations are typically well below 100ms
STORE_LATENCY_BUCKETS = (
    0.0005,
    0.001,
    0.005,
    0.01,
    0.025,
    0.05,
    0.1,
    0.25,
    0.5,
    1.0,
    2.5,
)


class _MetricsState:
    """Encapsulates metrics state to avoid global variables."""

    def __init__(self) -> None:
        self.initialized: bool = False
        self.admissions_total: Counter | None = None
        self.cache_lookups_total: Counter | None = None
        self.store_errors_total: Counter | None = None
        self.fallbacks_total: Counter | None = None
        self.store_duration: Histogram | None = None


_state = _MetricsState()


def is_enabled() -> bool:
    """Check if Prometheus metrics are enabled."""
    return _state.initialized


def _init_metrics() -> None:
    """Initialize Prometheus metrics (lazy).

    This function is idempotent - calling it multiple times has no effect
    after the first successful initialization.
    """
    if _state.initialized:
        return

    if _PROMETHEUS_CLASSES is None:
        logger.debug("prometheus-client not installed, metrics disabled")
        return

    counter_cls = _PROMETHEUS_CLASSES["Counter"]
    histogram_cls = _PROMETHEUS_CLASSES["Histogram"]

    _state.admissions_total = counter_cls(
        f"{NAMESPACE}_admissions_total",
        "Rate limit decisions",
        ["scope", "outcome"],
    )
    _state.cache_lookups_total = counter_cls(
        f"{NAMESPACE}_cache_lookups_total",
        "Response cache lookups",
        ["outcome"],
    )
    _state.store_errors_total = counter_cls(
        f"{NAMESPACE}_store_errors_total",
        "Store failures observed by kv-guard components",
        ["component"],
    )
    _state.fallbacks_total = counter_cls(
        f"{NAMESPACE}_fallbacks_total",
        "Fail-open or fail-as-miss activations caused by store failures",
        ["component"],
    )
    _state.store_duration = histogram_cls(
        f"{NAMESPACE}_store_operation_duration_seconds",
        "Store operation latency",
        ["operation"],
        buckets=STORE_LATENCY_BUCKETS,
    )

    _state.initialized = True
    logger.info("Prometheus metrics initialized for kv-guard")


def record_admission(scope: str, outcome: str) -> None:
    """Record a rate limit decision.

    Args:
        scope: Limiter scope (e.g. "global", "api")
        outcome: "admitted", "rejected" or "fail_open"
    """
    if not _state.initialized:
        return
    if _state.admissions_total is not None:
        _state.admissions_total.labels(scope=scope, outcome=outcome).inc()


def record_cache_lookup(outcome: str) -> None:
    """Record a cache lookup ("hit" or "miss")."""
    if not _state.initialized:
        return
    if _state.cache_lookups_total is not None:
        _state.cache_lookups_total.labels(outcome=outcome).inc()


def record_store_error(component: str) -> None:
    """Record a store failure seen by a component."""
    if not _state.initialized:
        return
    if _state.store_errors_total is not None:
        _state.store_errors_total.labels(component=component).inc()


def record_fallback(component: str) -> None:
    """Record a fail-open / fail-as-miss activation."""
    if not _state.initialized:
        return
    if _state.fallbacks_total is not None:
        _state.fallbacks_total.labels(component=component).inc()


def record_store_operation(operation: str, duration_seconds: float) -> None:
    """Record store operation latency.

    Args:
        operation: The operation name (e.g. "get", "increment", "publish")
        duration_seconds: Operation duration in seconds
    """
    if not _state.initialized:
        return
    if _state.store_duration is not None:
        _state.store_duration.labels(operation=operation).observe(duration_seconds)
