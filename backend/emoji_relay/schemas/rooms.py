from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class RoomSettingsPatch(BaseModel):
    selectedMode: Literal["Standard", "Emoji Only"] | None = None
    roundTime: int | None = Field(default=None, ge=10, le=600)
    voteDuration: int | None = Field(default=None, ge=10, le=300)
    maxPlayers: int | None = Field(default=None, ge=2, le=16)
    scoreToWin: int | None = Field(default=None, ge=1, le=100)
    spectatorEnabled: bool | None = None


class RoomLookupResponse(BaseModel):
    roomId: str
    roomCode: str
    status: Literal["lobby", "playing"]
    phase: str
    playerCount: int = Field(ge=0)
    onlinePlayerCount: int = Field(ge=0)
    hasOnlineHost: bool
    duplicates: int = Field(default=0, ge=0)


class HealthResponse(BaseModel):
    ok: bool
    database: Literal["up", "down"]
    redis: Literal["up", "down", "disabled"]
