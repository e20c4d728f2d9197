"""Prometheus metrics integration for kv-guard.

This module provides Prometheus metrics collection for rate limiting, caching
and store operations. Requires the `prometheus-client` package to be installed.

Installation:
    pip install 'kv-guard[prometheus]'

Usage:
    from kvguard.contrib.prometheus import enable_metrics

    # Enable metrics collection (call once at startup)
    enable_metrics()

For FastAPI applications:
    from kvguard.contrib.prometheus.fastapi import add_metrics_endpoint
    add_metrics_endpoint(app)
"""

from kvguard.contrib.prometheus.metrics import _init_metrics, is_enabled

try:
    import prometheus_client  # noqa: F401

    PROMETHEUS_AVAILABLE = True
except ImportError:
    PROMETHEUS_AVAILABLE = False


def enable_metrics() -> bool:
    """Enable Prometheus metrics collection.

    Returns:
        True if metrics were enabled, False if prometheus-client not installed.
    """
    if not PROMETHEUS_AVAILABLE:
        return False
    _init_metrics()
    return True


__all__ = ["enable_metrics", "is_enabled", "PROMETHEUS_AVAILABLE"]
