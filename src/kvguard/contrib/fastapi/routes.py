"""Admin and introspection routes, plus lifespan wiring.

``create_router(guard)`` exposes the guard's components over HTTP: health,
cache entries, rate limit counters, sessions, publishing and statistics.
Every route is itself rate limited per client IP under an ``admin:<route>``
scope. Register ``rate_limit_exception_handler`` on the application so that
rejections become 429 responses.
"""

import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from kvguard.contrib.fastapi.dependencies import RateLimitDependency
from kvguard.exceptions import StoreUnavailableError
from kvguard.guard import KVGuard

logger = logging.getLogger(__name__)

# (limit, window_seconds) per route
ADMIN_ROUTE_LIMITS: dict[str, tuple[int, int]] = {
    "health": (10, 60),
    "cache_get": (100, 60),
    "cache_set": (50, 60),
    "cache_delete": (50, 60),
    "rate_limit": (10, 60),
    "session_get": (20, 60),
    "session_set": (20, 60),
    "session_delete": (20, 60),
    "publish": (30, 60),
    "stats": (5, 60),
}


class CacheValueBody(BaseModel):
    value: Any = None
    ttl: int | None = Field(default=None, gt=0)


class SessionBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_data: dict[str, Any] | None = Field(default=None, alias="sessionData")
    ttl: int | None = Field(default=None, gt=0)


class PublishBody(BaseModel):
    message: Any = None


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_router(guard: KVGuard, *, tags: list[str] | None = None) -> APIRouter:
    """Create the admin router for a guard.

    Routes:
        GET    /health                        store health (503 when unreachable)
        GET    /cache/{key}                   read a cache entry
        POST   /cache/{key}                   write a cache entry ({"value", "ttl"})
        DELETE /cache/{key}                   delete a cache entry
        GET    /rate-limit/{scope}/{identity} current counter value
        GET    /session/{session_id}          read a session
        POST   /session/{session_id}          save a session ({"sessionData", "ttl"})
        DELETE /session/{session_id}          invalidate a session
        POST   /publish/{channel}             publish a message ({"message"})
        GET    /stats                         store status and in-process counters

    Example:
        >>> app = FastAPI(lifespan=guard_lifespan(guard))
        >>> app.add_exception_handler(RateLimitExceededError, rate_limit_exception_handler)
        >>> app.include_router(create_router(guard), prefix="/kv")
    """
    router = APIRouter(tags=tags or ["kv-guard"])
    started = time.monotonic()

    def limited(route: str) -> Any:
        limit, window = ADMIN_ROUTE_LIMITS[route]
        return Depends(
            RateLimitDependency(guard, scope=f"admin:{route}", limit=limit, window_seconds=window)
        )

    @router.get("/health", dependencies=[limited("health")])
    async def health() -> JSONResponse:
        status = await guard.health()
        if not status.healthy:
            return JSONResponse(
                status_code=503,
                content={
                    "status": "unhealthy",
                    "store": status.status,
                    "error": status.error,
                    "timestamp": _timestamp(),
                },
            )
        return JSONResponse(
            content={
                "status": "healthy",
                "store": status.status,
                "latency_ms": round(status.latency_ms or 0.0, 3),
                "timestamp": _timestamp(),
            }
        )

    @router.get("/cache/{key:path}", dependencies=[limited("cache_get")])
    async def get_cache_value(key: str) -> Any:
        lookup = await guard.cache.lookup(key)
        if not lookup.hit:
            return _error(404, "Key not found")
        return {"key": key, "value": lookup.value}

    @router.post("/cache/{key:path}", dependencies=[limited("cache_set")])
    async def set_cache_value(key: str, body: CacheValueBody) -> Any:
        if body.value is None:
            return _error(400, "Value is required")
        if not await guard.cache.put(key, body.value, body.ttl):
            return _error(503, "Failed to set cache value")
        return {"message": "Cache value set successfully", "key": key}

    @router.delete("/cache/{key:path}", dependencies=[limited("cache_delete")])
    async def delete_cache_value(key: str) -> Any:
        if await guard.cache.invalidate(key) == 0:
            return _error(404, "Key not found")
        return {"message": "Cache value deleted successfully", "key": key}

    @router.get("/rate-limit/{scope}/{identity}", dependencies=[limited("rate_limit")])
    async def get_rate_limit_count(scope: str, identity: str) -> Any:
        count = await guard.limiter.current_count(scope, identity)
        return {"scope": scope, "identity": identity, "count": count}

    @router.get("/session/{session_id}", dependencies=[limited("session_get")])
    async def get_session(session_id: str) -> Any:
        session = await guard.sessions.load(session_id)
        if session is None:
            return _error(404, "Session not found")
        return {"session_id": session_id, "session": session}

    @router.post("/session/{session_id}", dependencies=[limited("session_set")])
    async def save_session(session_id: str, body: SessionBody) -> Any:
        if not body.session_data:
            return _error(400, "Session data is required")
        if not await guard.sessions.save(session_id, body.session_data, body.ttl):
            return _error(503, "Failed to save session")
        return {"message": "Session saved successfully", "session_id": session_id}

    @router.delete("/session/{session_id}", dependencies=[limited("session_delete")])
    async def invalidate_session(session_id: str) -> Any:
        deleted = await guard.sessions.invalidate(session_id)
        return {
            "message": "Session invalidated successfully",
            "session_id": session_id,
            "deleted": deleted,
        }

    @router.post("/publish/{channel}", dependencies=[limited("publish")])
    async def publish(channel: str, body: PublishBody) -> Any:
        if body.message is None or body.message == "":
            return _error(400, "Message is required")
        subscribers = await guard.channel.publish(channel, body.message)
        return {
            "message": "Message published successfully",
            "channel": channel,
            "subscribers": subscribers,
        }

    @router.get("/stats", dependencies=[limited("stats")])
    async def stats() -> Any:
        status = await guard.health()
        return {
            "status": status.status,
            "engine": guard.store.engine,
            "timestamp": _timestamp(),
            "uptime": round(time.monotonic() - started, 3),
            "metrics": guard.metrics.as_dict(),
        }

    return router


def guard_lifespan(
    guard: KVGuard,
    *,
    require_store: bool = False,
) -> Callable[[FastAPI], Any]:
    """Return a FastAPI lifespan that connects the guard on startup and closes it on shutdown.

    The guard is also exposed as ``app.state.kvguard``.

    Args:
        guard: Guard to manage
        require_store: If True, an unreachable store aborts startup. By
            default the application starts anyway and every component runs
            in its degraded mode (admit, miss, drop) until the store answers.

    Example:
        >>> guard = KVGuard.from_config_file()
        >>> app = FastAPI(lifespan=guard_lifespan(guard))
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.kvguard = guard
        try:
            await guard.connect()
        except StoreUnavailableError as e:
            if require_store:
                await guard.close()
                raise
            logger.error("Store unavailable at startup, continuing degraded: %s", e)
        try:
            yield
        finally:
            await guard.close()

    return lifespan


__all__ = [
    "ADMIN_ROUTE_LIMITS",
    "CacheValueBody",
    "PublishBody",
    "SessionBody",
    "create_router",
    "guard_lifespan",
]
