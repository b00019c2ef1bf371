from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis

from emoji_relay.api.router import api_router
from emoji_relay.database import PostgresRecordStore, is_database_configured
from emoji_relay.memory_store import InMemoryRecordStore
from emoji_relay.presence import InMemoryPresenceHub, PresenceFactory
from emoji_relay.record_store import RecordStore
from emoji_relay.redis_presence import (
    close_redis,
    get_redis,
    init_redis,
    is_redis_configured,
    redis_presence_factory,
)
from emoji_relay.session import RoomSession
from emoji_relay.session_errors import ConnectionTimeout

logger = logging.getLogger(__name__)


def create_app(store: RecordStore | None = None, presence_redis: Redis | None = None) -> FastAPI:
    app = FastAPI(title="Emoji Relay Backend", version="1.0.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.store = store
    app.state.redis = presence_redis
    app.state.presence_hub = InMemoryPresenceHub()
    owns_store = store is None
    owns_redis = presence_redis is None

    @app.on_event("startup")
    async def on_startup() -> None:
        if app.state.store is None and not is_database_configured():
            logger.warning("DATABASE_URL is empty, rooms are kept in process memory")
            app.state.store = InMemoryRecordStore()
        if app.state.store is None:
            postgres = PostgresRecordStore()
            try:
                await postgres.init()
            except ConnectionTimeout:
                logger.exception("PostgreSQL is unavailable, serving degraded")
            app.state.store = postgres
        if app.state.redis is None and is_redis_configured():
            if await init_redis():
                app.state.redis = get_redis()
            else:
                logger.warning("Redis presence unavailable, using in-process presence")

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        if owns_store and app.state.store is not None:
            await app.state.store.close()
            app.state.store = None
        if owns_redis:
            await close_redis()
            app.state.redis = None

    app.include_router(api_router)
    return app


def presence_factory_for(app: FastAPI) -> PresenceFactory:
    client = getattr(app.state, "redis", None)
    if client is not None:
        return redis_presence_factory(client)
    return app.state.presence_hub.channel


def open_session(app: FastAPI, **kwargs: Any) -> RoomSession:
    """A RoomSession wired to the app's record store and presence backend."""
    store = getattr(app.state, "store", None)
    if store is None:
        raise RuntimeError("Record store is not ready")
    return RoomSession(store, presence_factory_for(app), **kwargs)
