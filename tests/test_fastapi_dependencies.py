"""Tests for the FastAPI rate limit dependency and exception handler."""

import pytest

pytest.importorskip("fastapi")

from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient
from starlette.requests import Request

from kvguard import GuardConfig, KVGuard, MemoryStoreConfig
from kvguard.contrib.fastapi import (
    RateLimitDependency,
    RateLimitExceededError,
    by_header,
    guard_lifespan,
    rate_limit,
    rate_limit_exception_handler,
)
from kvguard.testing import UnavailableStore


def make_guard() -> KVGuard:
    return KVGuard.from_config(GuardConfig(store=MemoryStoreConfig()))


def make_app(guard: KVGuard, dependency: RateLimitDependency) -> FastAPI:
    app = FastAPI(lifespan=guard_lifespan(guard))
    app.add_exception_handler(RateLimitExceededError, rate_limit_exception_handler)

    @app.get("/api/data")
    async def get_data(_: None = Depends(dependency)):
        return {"data": "value"}

    return app


class TestRateLimitDependency:
    """Test endpoint rate limiting through dependency injection."""

    def test_admits_until_limit_then_rejects(self):
        """Test headers on admitted requests and the 429 on the first excess one."""
        guard = make_guard()
        app = make_app(guard, RateLimitDependency(guard, scope="api", limit=2, window_seconds=60))

        with TestClient(app) as client:
            first = client.get("/api/data")
            second = client.get("/api/data")
            third = client.get("/api/data")

        assert first.status_code == 200
        assert first.json() == {"data": "value"}
        assert first.headers["X-RateLimit-Limit"] == "2"
        assert first.headers["X-RateLimit-Remaining"] == "1"
        assert second.headers["X-RateLimit-Remaining"] == "0"
        assert "Retry-After" not in second.headers

        assert third.status_code == 429
        assert third.json() == {
            "error": "Rate limit exceeded",
            "message": "Too many requests. Limit: 2 requests per 60 seconds",
        }
        assert third.headers["X-RateLimit-Remaining"] == "0"
        assert 1 <= int(third.headers["Retry-After"]) <= 60

    def test_policy_from_configuration(self):
        """Test that the scope's configured policy applies when none is given."""
        guard = make_guard()
        app = make_app(guard, RateLimitDependency(guard, scope="api"))

        with TestClient(app) as client:
            response = client.get("/api/data")

        assert response.headers["X-RateLimit-Limit"] == "50"

    def test_unknown_scope_uses_default_policy(self):
        """Test the fallback to the [rate_limit] default."""
        guard = make_guard()
        dependency = RateLimitDependency(guard, scope="reports")

        assert dependency.policy.limit == 100
        assert dependency.policy.window_seconds == 3600

    def test_fail_open_when_store_unavailable(self):
        """Test that a store outage never rejects requests."""
        guard = KVGuard(UnavailableStore(timeout=True))
        app = make_app(guard, RateLimitDependency(guard, scope="api", limit=1, window_seconds=60))

        with TestClient(app) as client:
            responses = [client.get("/api/data") for _ in range(3)]

        assert [r.status_code for r in responses] == [200, 200, 200]
        assert guard.metrics.fail_open_admissions == 3

    def test_identities_have_separate_counters(self):
        """Test per-identity limiting with a header extractor."""
        guard = make_guard()
        dependency = RateLimitDependency(
            guard,
            scope="keyed",
            limit=1,
            window_seconds=60,
            identifier_extractor=by_header("x-api-key"),
        )
        app = make_app(guard, dependency)

        with TestClient(app) as client:
            assert client.get("/api/data", headers={"x-api-key": "a"}).status_code == 200
            assert client.get("/api/data", headers={"x-api-key": "b"}).status_code == 200
            assert client.get("/api/data", headers={"x-api-key": "a"}).status_code == 429

    def test_async_extractor(self):
        """Test that async identifier extractors are awaited."""
        guard = make_guard()
        seen = []

        async def tenant(request: Request) -> str:
            value = request.headers.get("x-tenant", "anonymous")
            seen.append(value)
            return value

        app = make_app(guard, rate_limit(guard, 5, 60, scope="tenant", identifier_extractor=tenant))

        with TestClient(app) as client:
            response = client.get("/api/data", headers={"x-tenant": "acme"})

        assert response.status_code == 200
        assert seen == ["acme"]

    def test_limiter_target_requires_policy(self):
        """Test that a bare limiter needs an explicit limit and window."""
        guard = make_guard()

        with pytest.raises(ValueError, match="limit and window_seconds"):
            RateLimitDependency(guard.limiter, scope="api")

        dependency = RateLimitDependency(guard.limiter, scope="api", limit=3, window_seconds=10)
        assert dependency.limiter is guard.limiter

    def test_invalid_policy_rejected_at_setup(self):
        """Test that a non-positive limit fails when building the dependency."""
        with pytest.raises(ValueError):
            RateLimitDependency(make_guard(), scope="api", limit=0, window_seconds=60)
