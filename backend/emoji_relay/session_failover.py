from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable

from .record_store import RecordStore
from .session_constants import ONLINE_WINDOW_MS, SPLIT_BRAIN_HOST_WEIGHT
from .session_errors import SessionError, SplitBrainConflict
from .session_types import PlayerRecord, RoomRecord, SessionSnapshot
from .session_utils import identity_for_logs, log_session_event, now_ms

if TYPE_CHECKING:
    from .session import RoomSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoomCandidate:
    room: RoomRecord
    players: tuple[PlayerRecord, ...]
    score: int
    has_online_host: bool
    online_count: int

    @property
    def player_count(self) -> int:
        return len(self.players)


@dataclass(frozen=True)
class RoomResolution:
    winner: RoomCandidate | None
    candidates: tuple[RoomCandidate, ...] = ()
    deleted_room_ids: tuple[str, ...] = field(default_factory=tuple)

    @property
    def duplicates(self) -> int:
        return max(0, len(self.candidates) - 1)


def is_recently_seen(player: PlayerRecord, now: int, window_ms: int = ONLINE_WINDOW_MS) -> bool:
    return now - int(player.last_seen or 0) <= window_ms


def score_room(room: RoomRecord, players: Iterable[PlayerRecord], now: int) -> RoomCandidate:
    members = tuple(sorted(players, key=lambda item: (item.created_at, item.id)))
    online = [player for player in members if is_recently_seen(player, now)]
    has_online_host = any(player.is_host for player in online)
    online_non_hosts = sum(1 for player in online if not player.is_host)
    return RoomCandidate(
        room=room,
        players=members,
        score=SPLIT_BRAIN_HOST_WEIGHT * int(has_online_host) + online_non_hosts,
        has_online_host=has_online_host,
        online_count=len(online),
    )


def pick_canonical_room(candidates: Iterable[RoomCandidate]) -> RoomCandidate | None:
    ranked = sorted(
        candidates,
        key=lambda item: (item.score, item.room.created_at, item.room.id),
        reverse=True,
    )
    return ranked[0] if ranked else None


async def resolve_canonical_room(
    store: RecordStore,
    room_code: str,
    now: int | None = None,
    *,
    delete_empty_losers: bool = True,
) -> RoomResolution:
    now_value = now if now is not None else now_ms()
    rooms = await store.find_rooms_by_code(room_code)
    if not rooms:
        return RoomResolution(winner=None)
    player_lists = await asyncio.gather(*(store.list_players(room.id) for room in rooms))
    candidates = tuple(
        score_room(room, players, now_value) for room, players in zip(rooms, player_lists)
    )
    winner = pick_canonical_room(candidates)
    if len(candidates) < 2 or winner is None:
        return RoomResolution(winner=winner, candidates=candidates)

    conflict = SplitBrainConflict(room_code, [item.room.id for item in candidates])
    logger.warning("%s, canonical=%s score=%s", conflict, winner.room.id, winner.score)
    deleted: list[str] = []
    if delete_empty_losers:
        for candidate in candidates:
            if candidate is winner or candidate.players:
                continue
            try:
                await store.delete_room(candidate.room.id)
                deleted.append(candidate.room.id)
            except SessionError:
                logger.warning("Failed to delete duplicate room %s", candidate.room.id, exc_info=True)
    return RoomResolution(winner=winner, candidates=candidates, deleted_room_ids=tuple(deleted))


def election_candidate(snapshot: SessionSnapshot) -> PlayerRecord | None:
    online = snapshot.online_players()
    anchor = snapshot.settings.get("manual_host_id")
    for player in online:
        if player.id == anchor:
            return player
    return online[0] if online else None


def host_conflict_winner(snapshot: SessionSnapshot) -> PlayerRecord | None:
    online_hosts = [player for player in snapshot.players if player.is_host and snapshot.is_online(player.id)]
    if len(online_hosts) < 2:
        return None
    anchor = snapshot.settings.get("manual_host_id")
    for player in online_hosts:
        if player.id == anchor:
            return player
    return online_hosts[0]


class HostElection:
    """Hysteresis for replacing a host that is missing or offline."""

    def __init__(self, offline_wait_ms: int = 5000, missing_wait_ms: int = 500) -> None:
        self.offline_wait_ms = offline_wait_ms
        self.missing_wait_ms = missing_wait_ms
        self.pending_since: int | None = None

    def reset(self) -> None:
        self.pending_since = None

    def check(self, snapshot: SessionSnapshot, now: int) -> PlayerRecord | None:
        if snapshot.room is None or not snapshot.players:
            self.reset()
            return None
        if any(player.is_host and snapshot.is_online(player.id) for player in snapshot.players):
            self.reset()
            return None
        if self.pending_since is None:
            self.pending_since = now
        host_row_exists = any(player.is_host for player in snapshot.players)
        wait_ms = self.offline_wait_ms if host_row_exists else self.missing_wait_ms
        if now - self.pending_since < wait_ms:
            return None
        return election_candidate(snapshot)


async def claim_host(session: "RoomSession") -> bool:
    snapshot = session.snapshot()
    me = snapshot.me
    if me is None or snapshot.room is None:
        return False
    settings = copy.deepcopy(snapshot.settings)
    settings["manual_host_id"] = me.id
    session.mirror.set_room_local(settings=settings)
    session.mirror.set_player_local(me.id, is_host=True)
    room_record, player_record = await asyncio.gather(
        session.store.update_room(snapshot.room.id, settings=settings),
        session.store.update_player(me.id, is_host=True),
    )
    if room_record is not None:
        session.mirror.fences.confirm(("room", room_record.id), room_record.revision)
    if player_record is not None:
        session.mirror.fences.confirm(("player", me.id), player_record.revision)
    logger.error(
        "[HOST_ELECTED] room=%s new_host=%s phase=%s",
        snapshot.room.room_code,
        identity_for_logs(me.id),
        snapshot.phase,
    )
    log_session_event(logger, "host_elected", roomId=snapshot.room.id, playerId=me.id)
    return player_record is not None


async def demote_self(session: "RoomSession") -> bool:
    me_id = session.my_player_id
    if me_id is None:
        return False
    session.mirror.set_player_local(me_id, is_host=False)
    record = await session.store.update_player(me_id, is_host=False)
    if record is not None:
        session.mirror.fences.confirm(("player", me_id), record.revision)
    return record is not None


async def run_host_election(session: "RoomSession", now: int | None = None) -> bool:
    now_value = now if now is not None else now_ms()
    snapshot = session.snapshot(now_value)
    me = snapshot.me
    if me is None or snapshot.room is None:
        return False

    if me.is_host:
        session.election.reset()
        winner = host_conflict_winner(snapshot)
        if winner is None or winner.id == me.id:
            return False
        logger.warning(
            "[HOST_ABDICATED] room=%s yielded_to=%s",
            snapshot.room.room_code,
            identity_for_logs(winner.id),
        )
        return await demote_self(session)

    candidate = session.election.check(snapshot, now_value)
    if candidate is None or candidate.id != me.id:
        return False
    session.election.reset()
    return await claim_host(session)


async def run_split_brain_scan(session: "RoomSession", now: int | None = None) -> bool:
    """Moves this client to the canonical room when it sits in a duplicate."""
    room = session.room
    if room is None:
        return False
    resolution = await resolve_canonical_room(session.store, room.room_code, now)
    winner = resolution.winner
    if winner is None or winner.room.id == room.id:
        return False

    logger.warning(
        "[SPLIT_BRAIN] code=%s leaving=%s joining=%s",
        room.room_code,
        room.id,
        winner.room.id,
    )
    log_session_event(
        logger,
        "split_brain_rejoin",
        level=logging.WARNING,
        roomCode=room.room_code,
        fromRoomId=room.id,
        toRoomId=winner.room.id,
    )
    return await session._rejoin_canonical(room, winner.room)
