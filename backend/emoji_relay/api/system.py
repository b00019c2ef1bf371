from __future__ import annotations

from fastapi import APIRouter, Request

from emoji_relay.redis_presence import is_redis_configured, ping_redis
from emoji_relay.schemas.rooms import HealthResponse

router = APIRouter(tags=["system"])


@router.get("/api/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    store = getattr(request.app.state, "store", None)
    db_ok = await store.ping() if store is not None else False

    client = getattr(request.app.state, "redis", None)
    if client is None:
        redis_status = "down" if is_redis_configured() else "disabled"
    else:
        redis_status = "up" if await ping_redis(client) else "down"

    return HealthResponse(
        ok=db_ok,
        database="up" if db_ok else "down",
        redis=redis_status,
    )
