"""FastAPI integration for Prometheus metrics.

Usage:
    from fastapi import FastAPI
    from kvguard.contrib.prometheus.fastapi import add_metrics_endpoint

    app = FastAPI()
    add_metrics_endpoint(app)  # Adds GET /metrics endpoint
"""

from __future__ import annotations

from fastapi import FastAPI, Response

from kvguard.contrib.prometheus import PROMETHEUS_AVAILABLE, enable_metrics


def add_metrics_endpoint(
    app: FastAPI,
    path: str = "/metrics",
    include_in_schema: bool = False,
) -> bool:
    """Add a Prometheus metrics endpoint to a FastAPI app.

    Also enables metrics collection. If prometheus-client is not installed,
    no endpoint is added.

    Returns:
        True if the endpoint was added, False if prometheus-client not installed.
    """
    if not PROMETHEUS_AVAILABLE:
        return False

    from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

    enable_metrics()

    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.add_api_route(path, metrics, methods=["GET"], include_in_schema=include_in_schema)
    return True
