from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable

from .record_store import RecordStore
from .session_errors import RoomNotFound
from .session_phases import is_transition_allowed
from .session_types import (
    ChangeEvent,
    GameStateRecord,
    Phase,
    PlayerRecord,
    PresenceMeta,
    RoomRecord,
    SessionSnapshot,
)
from .session_utils import now_ms

if TYPE_CHECKING:
    from .session import RoomSession

logger = logging.getLogger(__name__)

FenceKey = tuple[str, str]


@dataclass
class _Fence:
    marked_at: int
    grace_ms: int
    revision: int | None = None


class WriteFences:
    """Per (resource, identity) protection of local optimistic writes.

    While a fence is active, inbound data for that key is discarded unless its
    revision is newer than the one our own write produced.
    """

    def __init__(self, grace_ms: int = 3000) -> None:
        self.grace_ms = grace_ms
        self._fences: dict[FenceKey, _Fence] = {}

    def mark(self, key: FenceKey, now: int | None = None, grace_ms: int | None = None) -> None:
        self._fences[key] = _Fence(
            marked_at=now if now is not None else now_ms(),
            grace_ms=self.grace_ms if grace_ms is None else grace_ms,
        )

    def confirm(self, key: FenceKey, revision: int) -> None:
        fence = self._fences.get(key)
        if fence is None:
            return
        if fence.revision is None or revision > fence.revision:
            fence.revision = revision

    def release(self, key: FenceKey) -> None:
        self._fences.pop(key, None)

    def release_kind(self, kind: str) -> None:
        for key in [item for item in self._fences if item[0] == kind]:
            self._fences.pop(key, None)

    def is_active(self, key: FenceKey, now: int | None = None) -> bool:
        fence = self._fences.get(key)
        if fence is None:
            return False
        now_value = now if now is not None else now_ms()
        if now_value - fence.marked_at >= fence.grace_ms:
            self._fences.pop(key, None)
            return False
        return True

    def should_discard(self, key: FenceKey, incoming_revision: int, now: int | None = None) -> bool:
        if not self.is_active(key, now):
            return False
        fence = self._fences[key]
        if fence.revision is not None and incoming_revision > fence.revision:
            return False
        return True

    def clear(self) -> None:
        self._fences.clear()


def merge_room(local: RoomRecord | None, incoming: RoomRecord, *, fenced: bool) -> RoomRecord | None:
    if local is not None and local.id == incoming.id:
        if incoming.revision < local.revision or fenced:
            return None
    return incoming.copy()


def merge_game_state(
    local: GameStateRecord | None,
    incoming: GameStateRecord,
    *,
    fenced: bool,
) -> GameStateRecord | None:
    if local is None or local.room_id != incoming.room_id:
        return incoming.copy()
    if incoming.revision < local.revision or fenced:
        return None
    if not is_transition_allowed(local.phase, incoming.phase):
        return None
    return incoming.copy()


def merge_player(
    local: PlayerRecord | None,
    incoming: PlayerRecord,
    *,
    answer_fenced: bool,
    row_fenced: bool,
) -> PlayerRecord | None:
    if local is None:
        return incoming.copy()
    if incoming.revision < local.revision:
        return None
    merged = incoming.copy()
    if row_fenced:
        merged.is_host = local.is_host
        merged.name = local.name
        merged.avatar = local.avatar
    if answer_fenced:
        merged.last_answer = local.last_answer
    return merged


class SessionMirror:
    """Local copy of one room, fed by the change feed and by full resyncs.

    Both producers go through the same apply_* methods.
    """

    def __init__(self, fences: WriteFences | None = None, answer_grace_ms: int = 2500) -> None:
        self.fences = fences or WriteFences()
        self.answer_grace_ms = answer_grace_ms
        self.room: RoomRecord | None = None
        self.players: dict[str, PlayerRecord] = {}
        self.game_state: GameStateRecord | None = None
        self.presence: dict[str, PresenceMeta] = {}
        self.my_player_id: str | None = None
        self.discarded = 0

    def reset(
        self,
        *,
        room: RoomRecord | None = None,
        players: Iterable[PlayerRecord] = (),
        game_state: GameStateRecord | None = None,
        my_player_id: str | None = None,
    ) -> None:
        self.fences.clear()
        self.room = room.copy() if room is not None else None
        self.players = {player.id: player.copy() for player in players}
        self.game_state = game_state.copy() if game_state is not None else None
        self.presence = {}
        self.my_player_id = my_player_id

    @property
    def room_id(self) -> str | None:
        return self.room.id if self.room is not None else None

    @property
    def phase(self) -> Phase:
        return self.game_state.phase if self.game_state is not None else "lobby"

    def snapshot(self, now: int | None = None) -> SessionSnapshot:
        return SessionSnapshot.capture(
            room=self.room,
            players=list(self.players.values()),
            game_state=self.game_state,
            presence=self.presence,
            my_player_id=self.my_player_id,
            taken_at=now if now is not None else now_ms(),
        )

    def _discard(self, what: str, record_id: str) -> bool:
        self.discarded += 1
        logger.debug("Discarded stale %s update id=%s", what, record_id)
        return False

    def apply_room(self, incoming: RoomRecord, now: int) -> bool:
        if self.room is not None and self.room.id != incoming.id:
            return False
        fenced = self.fences.should_discard(("room", incoming.id), incoming.revision, now)
        merged = merge_room(self.room, incoming, fenced=fenced)
        if merged is None:
            return self._discard("room", incoming.id)
        self.room = merged
        return True

    def apply_game_state(self, incoming: GameStateRecord, now: int) -> bool:
        if self.room is not None and incoming.room_id != self.room.id:
            return False
        fenced = self.fences.should_discard(("game_state", incoming.room_id), incoming.revision, now)
        merged = merge_game_state(self.game_state, incoming, fenced=fenced)
        if merged is None:
            return self._discard("game_state", incoming.room_id)
        if self.game_state is None or self.game_state.phase != merged.phase:
            # Answer fences belong to the phase that was just left.
            self.fences.release_kind("answer")
        self.game_state = merged
        return True

    def apply_player(self, incoming: PlayerRecord, now: int) -> bool:
        if self.room is not None and incoming.room_id != self.room.id:
            return False
        local = self.players.get(incoming.id)
        merged = merge_player(
            local,
            incoming,
            answer_fenced=self.fences.should_discard(("answer", incoming.id), incoming.revision, now),
            row_fenced=self.fences.should_discard(("player", incoming.id), incoming.revision, now),
        )
        if merged is None:
            return self._discard("player", incoming.id)
        self.players[incoming.id] = merged
        return True

    def remove_player(self, player_id: str) -> PlayerRecord | None:
        return self.players.pop(player_id, None)

    def apply_event(self, event: ChangeEvent, now: int | None = None) -> bool:
        now_value = now if now is not None else now_ms()
        if self.room is not None and event.room_id != self.room.id:
            return False
        if event.table == "rooms":
            if event.kind == "DELETE":
                self.room = None
                return True
            if isinstance(event.new, RoomRecord):
                return self.apply_room(event.new, now_value)
            return False
        if event.table == "players":
            if event.kind == "DELETE":
                return self.remove_player(event.record_id) is not None
            if isinstance(event.new, PlayerRecord):
                return self.apply_player(event.new, now_value)
            return False
        if event.table == "game_state":
            if event.kind == "DELETE":
                self.game_state = None
                return True
            if isinstance(event.new, GameStateRecord):
                return self.apply_game_state(event.new, now_value)
        return False

    def apply_resync(
        self,
        room: RoomRecord,
        players: Iterable[PlayerRecord],
        game_state: GameStateRecord | None,
        now: int | None = None,
    ) -> None:
        now_value = now if now is not None else now_ms()
        self.apply_room(room, now_value)
        if game_state is not None:
            self.apply_game_state(game_state, now_value)
        fetched: set[str] = set()
        for player in players:
            fetched.add(player.id)
            self.apply_player(player, now_value)
        for player_id in list(self.players):
            if player_id not in fetched and not self.fences.is_active(("player", player_id), now_value):
                self.players.pop(player_id, None)

    def set_room_local(
        self,
        *,
        settings: dict[str, Any] | None = None,
        status: str | None = None,
        now: int | None = None,
    ) -> None:
        if self.room is None:
            return
        self.fences.mark(("room", self.room.id), now)
        room = self.room.copy()
        if settings is not None:
            room.settings = settings
        if status is not None:
            room.status = status  # type: ignore[assignment]
        self.room = room

    def set_game_state_local(self, phase: Phase, phase_expiry: int | None, now: int | None = None) -> None:
        if self.game_state is None:
            return
        self.fences.mark(("game_state", self.game_state.room_id), now)
        if self.game_state.phase != phase:
            self.fences.release_kind("answer")
        state = self.game_state.copy()
        state.phase = phase
        state.phase_expiry = phase_expiry
        self.game_state = state

    def set_answer_local(self, player_id: str, answer: str | None, now: int | None = None) -> None:
        player = self.players.get(player_id)
        if player is None:
            return
        self.fences.mark(("answer", player_id), now, grace_ms=self.answer_grace_ms)
        player.last_answer = answer

    def set_player_local(self, player_id: str, now: int | None = None, **fields: Any) -> None:
        player = self.players.get(player_id)
        if player is None:
            return
        self.fences.mark(("player", player_id), now)
        for key, value in fields.items():
            setattr(player, key, value)

    def clear_answers_local(self, player_ids: Iterable[str] | None = None) -> None:
        targets = list(self.players) if player_ids is None else list(player_ids)
        for player_id in targets:
            self.fences.release(("answer", player_id))
            player = self.players.get(player_id)
            if player is not None:
                player.last_answer = None


async def fetch_room_state(
    store: RecordStore,
    room_id: str,
) -> tuple[RoomRecord | None, list[PlayerRecord], GameStateRecord | None]:
    room, players, game_state = await asyncio.gather(
        store.get_room(room_id),
        store.list_players(room_id),
        store.get_game_state(room_id),
    )
    return room, players, game_state


async def run_resync(session: "RoomSession") -> bool:
    room_id = session.room_id
    if room_id is None:
        return False
    try:
        room, players, game_state = await fetch_room_state(session.store, room_id)
    except Exception:
        logger.warning("Resync failed room=%s, retrying next tick", room_id, exc_info=True)
        return False
    if session.room_id != room_id:
        return False
    if room is None:
        await session._report_error(RoomNotFound(f"room {room_id} no longer exists"))
        return False
    session.mirror.apply_resync(room, players, game_state, now_ms())
    await session._after_mirror_change()
    return True
