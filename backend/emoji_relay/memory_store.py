from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Iterable

from .record_store import RecordStore, check_player_fields
from .session_errors import ConnectionTimeout
from .session_types import (
    AnyRecord,
    ChangeEvent,
    ChangeKind,
    GameStateRecord,
    Phase,
    PlayerRecord,
    RoomRecord,
    RoomStatus,
    TableName,
)
from .session_utils import now_ms, random_id

logger = logging.getLogger(__name__)


class InMemoryRecordStore(RecordStore):
    """Process-local store used by tests and single-process play.

    `failing` makes every call raise ConnectionTimeout; `mute_feed` drops change
    notifications while still applying writes.
    """

    def __init__(self, latency_s: float = 0.0) -> None:
        super().__init__()
        self.rooms: dict[str, RoomRecord] = {}
        self.players: dict[str, PlayerRecord] = {}
        self.game_states: dict[str, GameStateRecord] = {}
        self.latency_s = latency_s
        self.failing = False
        self.mute_feed = False
        self.write_count = 0
        self._last_created_at = 0

    async def _io(self, write: bool = False) -> None:
        await asyncio.sleep(self.latency_s)
        if self.failing:
            raise ConnectionTimeout("record store unreachable")
        if write:
            self.write_count += 1

    def _created_at(self) -> int:
        value = max(now_ms(), self._last_created_at + 1)
        self._last_created_at = value
        return value

    def _emit(
        self,
        table: TableName,
        kind: ChangeKind,
        record_id: str,
        room_id: str,
        new: AnyRecord | None = None,
        old: AnyRecord | None = None,
    ) -> None:
        if self.mute_feed:
            return
        self._fan_out(
            ChangeEvent(
                table=table,
                kind=kind,
                record_id=record_id,
                room_id=room_id,
                new=copy.deepcopy(new),
                old=copy.deepcopy(old),
            )
        )

    async def create_room(
        self,
        room_code: str,
        settings: dict[str, Any],
        status: RoomStatus = "lobby",
    ) -> RoomRecord:
        await self._io(write=True)
        room = RoomRecord(
            id=random_id(),
            room_code=room_code,
            status=status,
            settings=copy.deepcopy(settings),
            created_at=self._created_at(),
        )
        self.rooms[room.id] = room
        self._emit("rooms", "INSERT", room.id, room.id, new=room)
        return room.copy()

    async def get_room(self, room_id: str) -> RoomRecord | None:
        await self._io()
        room = self.rooms.get(room_id)
        return room.copy() if room is not None else None

    async def find_rooms_by_code(self, room_code: str) -> list[RoomRecord]:
        await self._io()
        matches = [room.copy() for room in self.rooms.values() if room.room_code == room_code]
        return sorted(matches, key=lambda item: (item.created_at, item.id))

    async def update_room(
        self,
        room_id: str,
        *,
        settings: dict[str, Any] | None = None,
        status: RoomStatus | None = None,
    ) -> RoomRecord | None:
        await self._io(write=True)
        room = self.rooms.get(room_id)
        if room is None:
            return None
        old = room.copy()
        if settings is not None:
            room.settings = copy.deepcopy(settings)
        if status is not None:
            room.status = status
        room.revision += 1
        self._emit("rooms", "UPDATE", room.id, room.id, new=room, old=old)
        return room.copy()

    async def delete_room(self, room_id: str) -> None:
        await self._io(write=True)
        for player in [item for item in self.players.values() if item.room_id == room_id]:
            self.players.pop(player.id, None)
            self._emit("players", "DELETE", player.id, room_id, old=player)
        state = self.game_states.pop(room_id, None)
        if state is not None:
            self._emit("game_state", "DELETE", room_id, room_id, old=state)
        room = self.rooms.pop(room_id, None)
        if room is not None:
            self._emit("rooms", "DELETE", room_id, room_id, old=room)

    async def create_player(
        self,
        room_id: str,
        *,
        name: str,
        avatar: str,
        is_host: bool = False,
        last_seen: int = 0,
    ) -> PlayerRecord:
        await self._io(write=True)
        player = PlayerRecord(
            id=random_id(),
            room_id=room_id,
            name=name,
            avatar=avatar,
            is_host=is_host,
            last_seen=last_seen or now_ms(),
            created_at=self._created_at(),
        )
        self.players[player.id] = player
        self._emit("players", "INSERT", player.id, room_id, new=player)
        return player.copy()

    async def get_player(self, player_id: str) -> PlayerRecord | None:
        await self._io()
        player = self.players.get(player_id)
        return player.copy() if player is not None else None

    async def list_players(self, room_id: str) -> list[PlayerRecord]:
        await self._io()
        rows = [player.copy() for player in self.players.values() if player.room_id == room_id]
        return sorted(rows, key=lambda item: (item.created_at, item.id))

    def _apply_player_fields(self, player: PlayerRecord, fields: dict[str, Any]) -> PlayerRecord:
        old = player.copy()
        for key, value in fields.items():
            setattr(player, key, copy.deepcopy(value))
        player.revision += 1
        self._emit("players", "UPDATE", player.id, player.room_id, new=player, old=old)
        return player.copy()

    async def update_player(self, player_id: str, **fields: Any) -> PlayerRecord | None:
        check_player_fields(fields)
        await self._io(write=True)
        player = self.players.get(player_id)
        if player is None:
            return None
        return self._apply_player_fields(player, fields)

    async def update_players(
        self,
        room_id: str,
        player_ids: Iterable[str] | None = None,
        **fields: Any,
    ) -> list[PlayerRecord]:
        check_player_fields(fields)
        await self._io(write=True)
        wanted = set(player_ids) if player_ids is not None else None
        updated: list[PlayerRecord] = []
        for player in list(self.players.values()):
            if player.room_id != room_id:
                continue
            if wanted is not None and player.id not in wanted:
                continue
            updated.append(self._apply_player_fields(player, fields))
        return updated

    async def delete_player(self, player_id: str) -> None:
        await self._io(write=True)
        player = self.players.pop(player_id, None)
        if player is not None:
            self._emit("players", "DELETE", player.id, player.room_id, old=player)

    async def create_game_state(self, room_id: str, phase: Phase = "lobby") -> GameStateRecord:
        await self._io(write=True)
        state = GameStateRecord(room_id=room_id, phase=phase)
        self.game_states[room_id] = state
        self._emit("game_state", "INSERT", room_id, room_id, new=state)
        return state.copy()

    async def get_game_state(self, room_id: str) -> GameStateRecord | None:
        await self._io()
        state = self.game_states.get(room_id)
        return state.copy() if state is not None else None

    async def update_game_state(
        self,
        room_id: str,
        *,
        phase: Phase,
        phase_expiry: int | None,
        timer: int = 0,
        expected_phase: Phase | None = None,
    ) -> GameStateRecord | None:
        await self._io(write=True)
        state = self.game_states.get(room_id)
        if state is None:
            return None
        if expected_phase is not None and state.phase != expected_phase:
            return None
        old = state.copy()
        state.phase = phase
        state.phase_expiry = phase_expiry
        state.timer = timer
        state.revision += 1
        self._emit("game_state", "UPDATE", room_id, room_id, new=state, old=old)
        return state.copy()

    async def ping(self) -> bool:
        return not self.failing

    def drop_feeds(self) -> None:
        for feed in list(self._feeds):
            feed.fail()
