from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from emoji_relay.api.deps import get_store
from emoji_relay.record_store import RecordStore
from emoji_relay.schemas.rooms import RoomLookupResponse
from emoji_relay.session_errors import ConnectionTimeout
from emoji_relay.session_reconnect import check_room_exists
from emoji_relay.session_utils import sanitize_room_code

logger = logging.getLogger(__name__)

router = APIRouter(tags=["rooms"])


@router.get("/api/rooms/{room_code}", response_model=RoomLookupResponse)
async def room_lookup(room_code: str, store: RecordStore = Depends(get_store)) -> RoomLookupResponse:
    code = sanitize_room_code(room_code)
    if not code:
        raise HTTPException(status_code=404, detail="Room not found")
    try:
        info = await check_room_exists(store, code)
        if info is None:
            raise HTTPException(status_code=404, detail="Room not found")
        room = info["room"]
        state = await store.get_game_state(room.id)
    except ConnectionTimeout as exc:
        logger.warning("Room lookup for %s failed: %s", code, exc)
        raise HTTPException(status_code=503, detail="Record store unavailable") from exc

    return RoomLookupResponse(
        roomId=room.id,
        roomCode=room.room_code,
        status=room.status,
        phase=state.phase if state is not None else "lobby",
        playerCount=info["playerCount"],
        onlinePlayerCount=info["onlinePlayerCount"],
        hasOnlineHost=info["hasOnlineHost"],
        duplicates=info["duplicates"],
    )
