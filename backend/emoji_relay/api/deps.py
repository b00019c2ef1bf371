from __future__ import annotations

from fastapi import HTTPException, Request

from emoji_relay.record_store import RecordStore


def get_store(request: Request) -> RecordStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Record store is not ready")
    return store
