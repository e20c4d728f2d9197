"""Tests for Prometheus metrics integration.

These tests verify that Prometheus metrics are recorded when the guard
components are used, and that the metrics endpoint is exported through the
FastAPI integration.
"""

import pytest

# Ensure prometheus-client is available for tests
pytest.importorskip("prometheus_client")

from prometheus_client import REGISTRY

from kvguard.contrib.prometheus import PROMETHEUS_AVAILABLE, enable_metrics
from kvguard.contrib.prometheus.metrics import (
    NAMESPACE,
    is_enabled,
    record_admission,
    record_cache_lookup,
    record_store_operation,
)
from kvguard import KVGuard
from kvguard.testing import UnavailableStore


def _sample(name: str, labels: dict[str, str]) -> float:
    return REGISTRY.get_sample_value(f"{NAMESPACE}_{name}", labels=labels) or 0.0


class TestPrometheusAvailability:
    """Test Prometheus availability detection."""

    def test_prometheus_available(self):
        """Test that PROMETHEUS_AVAILABLE is True when prometheus-client is installed."""
        assert PROMETHEUS_AVAILABLE is True

    def test_enable_metrics_is_idempotent(self):
        """Test that enable_metrics can be called repeatedly."""
        assert enable_metrics() is True
        assert enable_metrics() is True
        assert is_enabled() is True


class TestMetricsRecording:
    """Test that metrics are properly recorded."""

    def test_record_admission(self):
        """Test that admissions are counted by scope and outcome."""
        enable_metrics()
        labels = {"scope": "metrics_test", "outcome": "rejected"}
        before = _sample("admissions_total", labels)

        record_admission("metrics_test", "rejected")

        assert _sample("admissions_total", labels) == before + 1

    def test_record_cache_lookup(self):
        """Test hit and miss counters."""
        enable_metrics()
        before = _sample("cache_lookups_total", {"outcome": "hit"})

        record_cache_lookup("hit")

        assert _sample("cache_lookups_total", {"outcome": "hit"}) == before + 1

    def test_record_store_operation(self):
        """Test that latencies are observed."""
        enable_metrics()
        before = _sample("store_operation_duration_seconds_count", {"operation": "metrics_get"})

        record_store_operation("metrics_get", 0.002)

        assert (
            _sample("store_operation_duration_seconds_count", {"operation": "metrics_get"})
            == before + 1
        )


class TestComponentIntegration:
    """Test that components report into Prometheus."""

    async def test_limiter_decisions(self, guard):
        """Test admitted and rejected outcomes from the limiter."""
        enable_metrics()
        admitted = {"scope": "prom_scope", "outcome": "admitted"}
        rejected = {"scope": "prom_scope", "outcome": "rejected"}
        before_admitted = _sample("admissions_total", admitted)
        before_rejected = _sample("admissions_total", rejected)

        await guard.limiter.admit("prom_scope", "10.0.0.1", 1, 60)
        await guard.limiter.admit("prom_scope", "10.0.0.1", 1, 60)

        assert _sample("admissions_total", admitted) == before_admitted + 1
        assert _sample("admissions_total", rejected) == before_rejected + 1

    async def test_fail_open_recorded(self):
        """Test that store failures show up as errors and fallbacks."""
        enable_metrics()
        guard = KVGuard(UnavailableStore())
        before_errors = _sample("store_errors_total", {"component": "rate_limit"})
        before_fallbacks = _sample("fallbacks_total", {"component": "rate_limit"})

        assert await guard.limiter.admit("prom_fail", "10.0.0.1", 1, 60) is True

        assert _sample("store_errors_total", {"component": "rate_limit"}) == before_errors + 1
        assert _sample("fallbacks_total", {"component": "rate_limit"}) == before_fallbacks + 1


class TestFastAPIEndpoint:
    """Test the /metrics endpoint."""

    def test_metrics_endpoint(self):
        """Test that the endpoint serves the exposition format."""
        pytest.importorskip("fastapi")
        from fastapi import FastAPI
        from fastapi.testclient import TestClient

        from kvguard.contrib.prometheus.fastapi import add_metrics_endpoint

        app = FastAPI()
        assert add_metrics_endpoint(app) is True

        response = TestClient(app).get("/metrics")

        assert response.status_code == 200
        assert f"{NAMESPACE}_admissions_total" in response.text
