from __future__ import annotations

from fastapi import APIRouter

from emoji_relay.api.rooms import router as rooms_router
from emoji_relay.api.system import router as system_router

api_router = APIRouter()
api_router.include_router(system_router)
api_router.include_router(rooms_router)
