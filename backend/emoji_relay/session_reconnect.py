from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

from .config import settings as app_settings
from .record_store import RecordStore
from .session_constants import (
    DEFAULT_ROUND_TIME_SECONDS,
    DEFAULT_SCORE_TO_WIN,
    DEFAULT_VOTE_DURATION_SECONDS,
    ONLINE_WINDOW_MS,
    ROOM_CODE_ATTEMPTS,
    STALE_ROOM_MS,
    STANDARD_MODE,
)
from .session_errors import Kicked, RoomFull, RoomNotFound, SessionError, TerminalSessionError
from .session_failover import demote_self, resolve_canonical_room
from .session_types import PlayerRecord, RoomRecord
from .session_utils import (
    encode_avatar,
    identity_for_logs,
    log_session_event,
    make_unique_player_name,
    normalize_player_name,
    now_ms,
    random_room_code,
    sanitize_player_name,
    sanitize_room_code,
)

if TYPE_CHECKING:
    from .session import RoomSession

logger = logging.getLogger(__name__)


class SessionTokenStore:
    """Room code -> (room id, player id) tokens plus explicit-leave markers.

    Persisted as one JSON file when a path is given, otherwise kept in memory.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path else None
        self._tokens: dict[str, dict[str, str]] = {}
        self._explicit_leave: set[str] = set()
        self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("Ignoring unreadable session token file %s", self.path, exc_info=True)
            return
        tokens = payload.get("tokens") if isinstance(payload, dict) else None
        if isinstance(tokens, dict):
            for code, token in tokens.items():
                if isinstance(token, dict) and token.get("roomId") and token.get("playerId"):
                    self._tokens[str(code)] = {
                        "roomId": str(token["roomId"]),
                        "playerId": str(token["playerId"]),
                    }
        leaves = payload.get("explicitLeave") if isinstance(payload, dict) else None
        if isinstance(leaves, list):
            self._explicit_leave = {str(code) for code in leaves}

    def _save(self) -> None:
        if self.path is None:
            return
        payload = {"tokens": self._tokens, "explicitLeave": sorted(self._explicit_leave)}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        except OSError:
            logger.exception("Failed to persist session tokens to %s", self.path)

    def get(self, room_code: str) -> dict[str, str] | None:
        token = self._tokens.get(room_code)
        return dict(token) if token else None

    def set(self, room_code: str, room_id: str, player_id: str) -> None:
        self._tokens[room_code] = {"roomId": room_id, "playerId": player_id}
        self._save()

    def purge(self, room_code: str) -> None:
        if self._tokens.pop(room_code, None) is not None:
            self._save()

    def mark_explicit_leave(self, room_code: str) -> None:
        self._explicit_leave.add(room_code)
        self._save()

    def clear_explicit_leave(self, room_code: str) -> None:
        if room_code in self._explicit_leave:
            self._explicit_leave.discard(room_code)
            self._save()

    def has_explicit_leave(self, room_code: str) -> bool:
        return room_code in self._explicit_leave


def default_room_settings(max_players: int | None = None) -> dict[str, Any]:
    return {
        "selectedMode": STANDARD_MODE,
        "roundTime": DEFAULT_ROUND_TIME_SECONDS,
        "voteDuration": DEFAULT_VOTE_DURATION_SECONDS,
        "maxPlayers": max_players or app_settings.max_players_default,
        "scoreToWin": DEFAULT_SCORE_TO_WIN,
        "spectatorEnabled": False,
        "player_order": [],
        "player_names": {},
        "chains": {},
        "assignments": {},
        "history": {},
        "kicked_names": [],
        "kicked_fingerprints": [],
    }


def is_banned(room_settings: dict[str, Any], name: str | None, fingerprint: str | None) -> bool:
    kicked_names = {normalize_player_name(item) for item in room_settings.get("kicked_names") or []}
    kicked_fingerprints = set(room_settings.get("kicked_fingerprints") or [])
    if name and normalize_player_name(name) in kicked_names:
        return True
    return bool(fingerprint) and fingerprint in kicked_fingerprints


def max_players_for(room: RoomRecord) -> int:
    try:
        value = int(room.settings.get("maxPlayers") or app_settings.max_players_default)
    except (TypeError, ValueError):
        value = app_settings.max_players_default
    return max(2, value)


async def is_room_stale(store: RecordStore, room: RoomRecord, now: int) -> bool:
    """Old enough to reclaim and nobody in it has been seen for as long."""
    if now - room.created_at < STALE_ROOM_MS:
        return False
    players = await store.list_players(room.id)
    return all(now - int(player.last_seen or 0) >= STALE_ROOM_MS for player in players)


async def create_room(session: "RoomSession", name: str | None, avatar: str | None) -> str | None:
    """Creates a room hosted by this client and enters it. Returns the join code."""
    store = session.store
    player_name = sanitize_player_name(name)
    try:
        for attempt in range(1, ROOM_CODE_ATTEMPTS + 1):
            code = random_room_code()
            now_value = now_ms()
            existing = await store.find_rooms_by_code(code)
            if existing:
                stale_flags = [await is_room_stale(store, room, now_value) for room in existing]
                if not all(stale_flags):
                    logger.info("Room code %s taken, attempt %s", code, attempt)
                    continue
                for stale in existing:
                    await store.delete_room(stale.id)
                logger.info("Reclaimed stale room code %s", code)

            room = await store.create_room(code, default_room_settings(), status="lobby")
            clones = await store.find_rooms_by_code(code)
            if any(clone.id != room.id for clone in clones):
                logger.warning("Room code %s was created concurrently, retrying", code)
                await store.delete_room(room.id)
                continue

            player = await store.create_player(
                room.id,
                name=player_name,
                avatar=encode_avatar(avatar, session.fingerprint),
                is_host=True,
                last_seen=now_value,
            )
            await store.create_game_state(room.id, "lobby")
            session.tokens.set(code, room.id, player.id)
            session.tokens.clear_explicit_leave(code)
            await session._enter_room(room, player.id)
            log_session_event(logger, "room_created", roomId=room.id, roomCode=code)
            return code
    except SessionError:
        logger.exception("Failed to create room")
        return None
    logger.warning("Gave up creating a room after %s attempts", ROOM_CODE_ATTEMPTS)
    return None


async def join_room(
    session: "RoomSession",
    code: str,
    name: str | None,
    avatar: str | None,
    auto_reconnect: bool = False,
) -> bool:
    room_code = sanitize_room_code(code)
    if not room_code:
        return False
    if auto_reconnect and session.tokens.has_explicit_leave(room_code):
        logger.info("Skipping auto-reconnect to %s after explicit leave", room_code)
        return False
    current = session.room
    if current is not None and current.room_code == room_code and session.my_player_id:
        return True

    pending = session._join_tasks.get(room_code)
    if pending is not None:
        return await pending

    task = asyncio.ensure_future(_join(session, room_code, name, avatar, auto_reconnect))
    session._join_tasks[room_code] = task
    try:
        return await task
    finally:
        session._join_tasks.pop(room_code, None)


def _find_player(players: Iterable[PlayerRecord], player_id: str) -> PlayerRecord | None:
    for player in players:
        if player.id == player_id:
            return player
    return None


async def _join(
    session: "RoomSession",
    room_code: str,
    name: str | None,
    avatar: str | None,
    auto_reconnect: bool,
) -> bool:
    store = session.store
    fingerprint = session.fingerprint
    try:
        resolution = await resolve_canonical_room(store, room_code)
        if resolution.winner is None:
            raise RoomNotFound(f"no room answers to code {room_code}")
        room = resolution.winner.room
        players = list(resolution.winner.players)
        if is_banned(room.settings, name, fingerprint):
            raise Kicked(f"banned from room {room_code}")

        restored: PlayerRecord | None = None
        token = session.tokens.get(room_code)
        if token is not None:
            if token["roomId"] == room.id:
                restored = _find_player(players, token["playerId"])
            if restored is None:
                session.tokens.purge(room_code)
                if auto_reconnect:
                    logger.info("Stale session token for %s, not reconnecting", room_code)
                    return False
        if restored is None and fingerprint:
            matches = [player for player in players if player.fingerprint == fingerprint]
            if matches:
                restored = max(matches, key=lambda item: (item.last_seen, item.created_at))

        if restored is not None:
            player = await _restore_player(session, players, restored, name, avatar)
        else:
            player = await _create_player(session, room, players, name, avatar)

        session.tokens.set(room_code, room.id, player.id)
        session.tokens.clear_explicit_leave(room_code)
        await session._enter_room(room, player.id)
        log_session_event(
            logger,
            "room_joined",
            roomId=room.id,
            roomCode=room_code,
            player=identity_for_logs(player.id),
            restored=restored is not None,
            duplicates=resolution.duplicates,
        )
        return True
    except TerminalSessionError as exc:
        await session._report_error(exc, room_code=room_code)
        return False
    except SessionError:
        logger.exception("Failed to join room %s", room_code)
        return False


async def _restore_player(
    session: "RoomSession",
    players: list[PlayerRecord],
    restored: PlayerRecord,
    name: str | None,
    avatar: str | None,
) -> PlayerRecord:
    store = session.store
    now_value = now_ms()
    ghosts = [
        player
        for player in players
        if player.id != restored.id and restored.fingerprint and player.fingerprint == restored.fingerprint
    ]
    for ghost in ghosts:
        await store.delete_player(ghost.id)
    if ghosts:
        logger.info("Removed %s ghost rows for %s", len(ghosts), identity_for_logs(restored.fingerprint))

    ghost_ids = {ghost.id for ghost in ghosts}
    others = [player for player in players if player.id != restored.id and player.id not in ghost_ids]
    fields: dict[str, Any] = {
        "avatar": encode_avatar(avatar or restored.display_avatar, session.fingerprint or restored.fingerprint),
        "last_seen": now_value,
    }
    if name and normalize_player_name(name) != normalize_player_name(restored.name):
        fields["name"] = make_unique_player_name(name, (player.name for player in others))

    if restored.is_host:
        rival = next(
            (
                player
                for player in others
                if player.is_host and now_value - int(player.last_seen or 0) <= ONLINE_WINDOW_MS
            ),
            None,
        )
        if rival is not None:
            fields["is_host"] = False
            logger.warning(
                "[HOST_DEMOTED_ON_REJOIN] player=%s active_host=%s",
                identity_for_logs(restored.id),
                identity_for_logs(rival.id),
            )

    updated = await store.update_player(restored.id, **fields)
    if updated is None:
        raise RoomNotFound(f"player {restored.id} disappeared during restore")
    return updated


async def _create_player(
    session: "RoomSession",
    room: RoomRecord,
    players: list[PlayerRecord],
    name: str | None,
    avatar: str | None,
) -> PlayerRecord:
    if len(players) >= max_players_for(room):
        raise RoomFull(f"room {room.room_code} is full")
    return await session.store.create_player(
        room.id,
        name=make_unique_player_name(name, (player.name for player in players)),
        avatar=encode_avatar(avatar, session.fingerprint),
        is_host=not players,
        last_seen=now_ms(),
    )


async def leave_room(session: "RoomSession", explicit: bool = True) -> None:
    room = session.room
    me_id = session.my_player_id
    session._leaving = True
    if room is None:
        await session._teardown()
        return

    if explicit:
        session.tokens.mark_explicit_leave(room.room_code)
    session.tokens.purge(room.room_code)

    store = session.store
    try:
        if me_id is not None:
            mid_game = room.status == "playing" and session.mirror.phase not in ("scoreboard", "winner")
            if not mid_game:
                await store.delete_player(me_id)
            elif session.snapshot().is_host:
                # Row stays for reconnection; hosting passes on through election.
                await demote_self(session)
        if await store.count_players(room.id) == 0:
            await store.delete_room(room.id)
            logger.info("Deleted empty room %s", room.room_code)
    except SessionError:
        logger.exception("Error leaving room %s", room.room_code)
    finally:
        log_session_event(logger, "room_left", roomId=room.id, explicit=explicit)
        await session._teardown()


async def check_room_exists(store: RecordStore, code: str) -> dict[str, Any] | None:
    room_code = sanitize_room_code(code)
    if not room_code:
        return None
    resolution = await resolve_canonical_room(store, room_code, delete_empty_losers=False)
    winner = resolution.winner
    if winner is None:
        return None
    return {
        "room": winner.room,
        "playerCount": winner.player_count,
        "onlinePlayerCount": winner.online_count,
        "hasOnlineHost": winner.has_online_host,
        "duplicates": resolution.duplicates,
    }
