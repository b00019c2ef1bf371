from __future__ import annotations

import asyncio
import copy
import logging
import math
from typing import Any, Awaitable, Callable, Iterable, Mapping

from pydantic import ValidationError

from .config import SessionTimings, settings as app_settings
from .presence import PresenceChannel, PresenceFactory, presence_topic
from .record_store import ChangeFeed, RecordStore
from .schemas.rooms import RoomSettingsPatch
from .session_answers import (
    VoteEntry,
    draft_prefix_for_phase,
    encode_votes,
    is_final_for_phase,
    remaining_votes,
    with_final_prefix,
)
from .session_constants import ANSWER_PHASES, HOUSEKEEPING_PHASES
from .session_errors import AfkTimeout, Kicked, RoomNotFound, SessionError, TerminalSessionError
from .session_failover import HostElection, run_host_election, run_split_brain_scan
from .session_host_flow import (
    TransitionGate,
    advance_phase,
    advance_reveal,
    continue_after_scoreboard,
    run_host_monitor,
    start_game,
)
from .session_phases import score_to_win
from .session_reconnect import (
    SessionTokenStore,
    check_room_exists,
    create_room,
    is_banned,
    join_room,
    leave_room,
)
from .session_state_sync import SessionMirror, WriteFences, fetch_room_state, run_resync
from .session_types import (
    ChangeEvent,
    GameStateRecord,
    Notification,
    Phase,
    PlayerRecord,
    PresenceEvent,
    PresenceMeta,
    RoomRecord,
    SessionSnapshot,
)
from .session_utils import identity_for_logs, log_session_event, now_ms

logger = logging.getLogger(__name__)

ErrorListener = Callable[[TerminalSessionError], None]


class RoomSession:
    """One client's view of one room.

    Every store or presence failure is absorbed here and retried on the next
    tick; terminal conditions end up in `error` exactly once.
    """

    def __init__(
        self,
        store: RecordStore,
        presence_factory: PresenceFactory,
        *,
        fingerprint: str | None = None,
        tokens: SessionTokenStore | None = None,
        timings: SessionTimings | None = None,
        autostart_tasks: bool = True,
    ) -> None:
        self.store = store
        self.presence_factory = presence_factory
        self.fingerprint = fingerprint
        self.tokens = tokens or SessionTokenStore(app_settings.session_token_path)
        self.timings = timings or SessionTimings.from_settings()
        self.autostart_tasks = autostart_tasks

        self.mirror = SessionMirror(
            WriteFences(self.timings.write_fence_grace_ms),
            answer_grace_ms=self.timings.answer_fence_grace_ms,
        )
        self.gate = TransitionGate(self.timings.transition_settle_ms)
        self.election = HostElection(
            offline_wait_ms=self.timings.host_offline_wait_ms,
            missing_wait_ms=self.timings.host_missing_wait_ms,
        )
        self.presence: PresenceChannel | None = None
        self.error: TerminalSessionError | None = None
        self.notifications: dict[str, Notification] = {}
        self.seconds_left: int | None = None
        self.collapse_since: int | None = None
        self.offline_since: dict[str, int] = {}
        self.away_since: dict[str, int] = {}

        self._generation = 0
        self._leaving = False
        self._presence_since = 0
        self._feed: ChangeFeed | None = None
        self._join_tasks: dict[str, asyncio.Future[bool]] = {}
        self._listeners: list[ErrorListener] = []
        self._timers: dict[str, asyncio.Task[None] | None] = {}
        self._background: set[asyncio.Task[Any]] = set()

    # -- state -----------------------------------------------------------

    @property
    def room(self) -> RoomRecord | None:
        return self.mirror.room

    @property
    def room_id(self) -> str | None:
        return self.mirror.room_id

    @property
    def my_player_id(self) -> str | None:
        return self.mirror.my_player_id

    @property
    def game_state(self) -> GameStateRecord | None:
        return self.mirror.game_state

    @property
    def phase(self) -> Phase:
        return self.mirror.phase

    @property
    def players(self) -> list[PlayerRecord]:
        return sorted(self.mirror.players.values(), key=lambda item: (item.created_at, item.id))

    def snapshot(self, now: int | None = None) -> SessionSnapshot:
        if self.presence is not None:
            self.mirror.presence = self.presence.members()
        return self.mirror.snapshot(now)

    def add_error_listener(self, listener: ErrorListener) -> None:
        self._listeners.append(listener)

    def active_notifications(self, now: int | None = None) -> list[Notification]:
        now_value = now if now is not None else now_ms()
        ttl = self.timings.notification_ttl_ms
        return [item for item in self.notifications.values() if now_value - item.created_at < ttl]

    def _notify(self, key: str, message: str, kind: str) -> None:
        now_value = now_ms()
        ttl = self.timings.notification_ttl_ms
        self.notifications = {
            item_key: item for item_key, item in self.notifications.items() if now_value - item.created_at < ttl
        }
        if key in self.notifications:
            return
        self.notifications[key] = Notification(key=key, message=message, kind=kind, created_at=now_value)

    # -- timers ----------------------------------------------------------

    def _spawn(self, awaitable: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(awaitable)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _cancel_timer(self, key: str) -> None:
        task = self._timers.get(key)
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._timers[key] = None

    def _clear_timers(self) -> None:
        for key in list(self._timers):
            self._cancel_timer(key)
        current = asyncio.current_task()
        for task in list(self._background):
            if task is not current and not task.done():
                task.cancel()

    def _schedule_interval(
        self,
        key: str,
        interval_ms: int,
        callback: Callable[[], Awaitable[Any]],
    ) -> None:
        self._cancel_timer(key)
        generation = self._generation
        delay_s = max(0.01, (interval_ms or 0) / 1000)

        async def runner() -> None:
            while generation == self._generation:
                try:
                    await asyncio.sleep(delay_s)
                except asyncio.CancelledError:
                    return
                if generation != self._generation:
                    return
                try:
                    await callback()
                except SessionError:
                    logger.warning("Scheduled %s failed, retrying next tick", key, exc_info=True)
                except Exception:
                    logger.exception("Scheduled %s crashed room=%s", key, self.room_id)

        self._timers[key] = asyncio.create_task(runner(), name=f"{self.room_id}:{key}")

    def _start_tasks(self) -> None:
        cfg = self.timings
        self._schedule_interval("tick", cfg.countdown_tick_ms, self.run_countdown_tick)
        self._schedule_interval("monitor", cfg.host_monitor_interval_ms, self.run_host_monitor)
        self._schedule_interval("sweep", cfg.sweep_interval_ms, self.run_sweep)
        self._schedule_interval("resync", cfg.resync_interval_ms, self.refresh_room_state)
        self._schedule_interval("heartbeat", cfg.heartbeat_interval_ms, self.run_heartbeat)
        self._schedule_interval("splitBrain", cfg.split_brain_scan_interval_ms, self.run_split_brain_scan)

    # -- lifecycle -------------------------------------------------------

    async def _enter_room(self, room: RoomRecord, player_id: str) -> None:
        await self._teardown()
        self.error = None
        generation = self._generation

        self._feed = self.store.subscribe(room.id)
        room_state, players, game_state = await fetch_room_state(self.store, room.id)
        self.mirror.reset(
            room=room_state or room,
            players=players,
            game_state=game_state,
            my_player_id=player_id,
        )

        self.presence = self.presence_factory(presence_topic(room.id), player_id)
        self._presence_since = now_ms()
        await self.presence.track(PresenceMeta(player_id=player_id, online_at=self._presence_since))

        self._timers["feed"] = asyncio.create_task(
            self._consume_feed(generation, self._feed), name=f"{room.id}:feed"
        )
        self._timers["presence"] = asyncio.create_task(
            self._consume_presence(generation, self.presence), name=f"{room.id}:presence"
        )
        if self.autostart_tasks:
            self._start_tasks()
        logger.info(
            "Entered room %s as %s phase=%s",
            room.room_code,
            identity_for_logs(player_id),
            self.phase,
        )

    async def _teardown(self) -> None:
        self._generation += 1
        self._clear_timers()
        if self._feed is not None:
            self._feed.close()
            self._feed = None
        presence, self.presence = self.presence, None
        if presence is not None:
            try:
                await presence.close()
            except Exception:
                logger.warning("Presence close failed", exc_info=True)
        self.gate.reset()
        self.election.reset()
        self.collapse_since = None
        self.seconds_left = None
        self.offline_since.clear()
        self.away_since.clear()
        self.mirror.reset()
        self._leaving = False

    async def close(self) -> None:
        await self._teardown()

    async def _report_error(self, exc: TerminalSessionError, room_code: str | None = None) -> None:
        if self.error is not None:
            return
        self.error = exc
        code = room_code or (self.room.room_code if self.room is not None else None)
        logger.warning("Session ended room=%s reason=%s: %s", code, exc.code, exc)
        log_session_event(logger, "terminal_error", level=logging.WARNING, roomCode=code, code=exc.code)
        if code:
            self.tokens.purge(code)
            self.tokens.mark_explicit_leave(code)
        for listener in list(self._listeners):
            try:
                listener(exc)
            except Exception:
                logger.exception("Error listener failed")
        await self._teardown()

    async def _rejoin_canonical(self, old_room: RoomRecord, winner_room: RoomRecord) -> bool:
        me = self.mirror.players.get(self.my_player_id or "")
        name = me.name if me is not None else None
        avatar = me.display_avatar if me is not None else None
        self._leaving = True
        try:
            if me is not None:
                await self.store.delete_player(me.id)
            if await self.store.count_players(old_room.id) == 0:
                await self.store.delete_room(old_room.id)
        except SessionError:
            logger.warning("Cleanup of duplicate room %s failed", old_room.id, exc_info=True)
        self.tokens.purge(old_room.room_code)
        await self._teardown()
        return await join_room(self, winner_room.room_code, name, avatar)

    # -- inbound ---------------------------------------------------------

    async def _consume_feed(self, generation: int, feed: ChangeFeed) -> None:
        while generation == self._generation:
            try:
                async for event in feed:
                    await self.process_event(event)
                return
            except ConnectionError:
                logger.warning("Change feed dropped room=%s, resubscribing", self.room_id)
            finally:
                feed.close()
            try:
                await asyncio.sleep(self.timings.feed_retry_ms / 1000)
            except asyncio.CancelledError:
                return
            if generation != self._generation or self.room_id is None:
                return
            feed = self.store.subscribe(self.room_id)
            self._feed = feed
            await self.refresh_room_state()

    async def _consume_presence(self, generation: int, channel: PresenceChannel) -> None:
        while generation == self._generation:
            try:
                async for event in channel.events():
                    self._on_presence(event)
            except Exception:
                logger.warning("Presence subscription failed room=%s", self.room_id, exc_info=True)
            try:
                await asyncio.sleep(self.timings.feed_retry_ms / 1000)
            except asyncio.CancelledError:
                return
            if generation != self._generation or self.room_id is None or self.my_player_id is None:
                return
            logger.info("Re-tracking presence room=%s", self.room_id)
            channel = self.presence_factory(presence_topic(self.room_id), self.my_player_id)
            self.presence = channel
            self._presence_since = now_ms()
            try:
                await channel.track(PresenceMeta(player_id=self.my_player_id, online_at=self._presence_since))
            except Exception:
                logger.warning("Presence re-track failed room=%s", self.room_id, exc_info=True)

    def _on_presence(self, event: PresenceEvent) -> None:
        self.mirror.presence = dict(event.members)
        if event.kind == "sync" or self.room is None or self.room.status != "playing":
            return
        if now_ms() - self._presence_since < self.timings.notification_quiet_ms:
            return
        for player_id in event.changed:
            if player_id == self.my_player_id:
                continue
            player = self.mirror.players.get(player_id)
            name = player.name if player is not None else "A player"
            if event.kind == "join":
                self._notify(f"join:{player_id}", f"{name} reconnected", "reconnect")
            else:
                self._notify(f"leave:{player_id}", f"{name} disconnected", "disconnect")

    async def process_event(self, event: ChangeEvent) -> None:
        if self.room_id is None or event.room_id != self.room_id:
            return
        try:
            if event.table == "players" and event.kind == "DELETE" and event.record_id == self.my_player_id:
                if not self._leaving:
                    await self._handle_self_removed()
                return
            if event.table == "rooms" and event.kind == "DELETE":
                if not self._leaving:
                    await self._report_error(RoomNotFound(f"room {event.room_id} was deleted"))
                return
            if self.mirror.apply_event(event):
                await self._after_mirror_change()
        except SessionError:
            logger.warning("Failed to process %s %s event", event.table, event.kind, exc_info=True)

    async def _handle_self_removed(self) -> None:
        me = self.mirror.players.get(self.my_player_id or "")
        room_settings: Mapping[str, Any] = self.room.settings if self.room is not None else {}
        try:
            fresh = await self.store.get_room(self.room_id or "")
        except SessionError:
            logger.warning("Room lookup after removal failed room=%s", self.room_id, exc_info=True)
        else:
            if fresh is None:
                await self._report_error(RoomNotFound(f"room {self.room_id} was deleted"))
                return
            room_settings = fresh.settings
        name = me.name if me is not None else None
        fingerprint = self.fingerprint or (me.fingerprint if me is not None else None)
        if is_banned(dict(room_settings), name, fingerprint):
            await self._report_error(Kicked("removed by the host"))
        else:
            await self._report_error(AfkTimeout("removed for inactivity"))

    async def _after_mirror_change(self) -> None:
        if self._leaving or self.room is None or self.my_player_id is None:
            return
        me = self.mirror.players.get(self.my_player_id)
        if me is None:
            await self._handle_self_removed()
            return
        if is_banned(self.room.settings, me.name, self.fingerprint or me.fingerprint):
            await self._report_error(Kicked("banned by the host"))

    # -- scheduled tasks -------------------------------------------------

    async def refresh_room_state(self) -> bool:
        return await run_resync(self)

    async def run_countdown_tick(self, now: int | None = None) -> None:
        now_value = now if now is not None else now_ms()
        state = self.game_state
        if state is None or state.phase_expiry is None:
            self.seconds_left = None
        else:
            self.seconds_left = max(0, math.ceil((state.phase_expiry - now_value) / 1000))
        await run_host_election(self, now_value)

    async def run_host_monitor(self, now: int | None = None) -> bool:
        return await run_host_monitor(self, now)

    async def run_split_brain_scan(self, now: int | None = None) -> bool:
        return await run_split_brain_scan(self, now)

    async def run_heartbeat(self, now: int | None = None) -> bool:
        me_id = self.my_player_id
        if me_id is None:
            return False
        now_value = now if now is not None else now_ms()
        record = await self.store.update_player(me_id, last_seen=now_value)
        if record is None:
            return False
        self.mirror.apply_player(record, now_value)
        return True

    async def run_sweep(self, now: int | None = None) -> int:
        """AFK timeouts and player_order cleanup. Host only."""
        now_value = now if now is not None else now_ms()
        snapshot = self.snapshot(now_value)
        if not snapshot.is_host or snapshot.room is None:
            self.offline_since.clear()
            self.away_since.clear()
            return 0

        cfg = self.timings
        present_ids = {player.id for player in snapshot.players}
        for tracked in (self.offline_since, self.away_since):
            for player_id in [pid for pid in tracked if pid not in present_ids]:
                tracked.pop(player_id, None)

        timed_out = 0
        for player in snapshot.players:
            if player.id == snapshot.my_player_id or player.is_host:
                continue
            if snapshot.is_online(player.id):
                self.offline_since.pop(player.id, None)
            else:
                self.offline_since.setdefault(player.id, now_value)
            if snapshot.is_online(player.id) and snapshot.is_away(player.id):
                self.away_since.setdefault(player.id, now_value)
            else:
                self.away_since.pop(player.id, None)

            offline_for = now_value - self.offline_since.get(player.id, now_value)
            away_for = now_value - self.away_since.get(player.id, now_value)
            if offline_for >= cfg.afk_offline_ms or away_for >= cfg.afk_away_ms:
                if await self.timeout_player(player.id):
                    timed_out += 1

        if snapshot.phase in HOUSEKEEPING_PHASES:
            order = snapshot.player_order
            cleaned = [pid for pid in order if pid in present_ids and pid in self.mirror.players]
            if cleaned != order:
                room_settings = copy.deepcopy(snapshot.settings)
                room_settings["player_order"] = cleaned
                await self._write_room_settings(room_settings)
        return timed_out

    # -- room lifecycle --------------------------------------------------

    async def create_room(self, name: str | None, avatar: str | None) -> str | None:
        return await create_room(self, name, avatar)

    async def join_room(
        self,
        code: str,
        name: str | None,
        avatar: str | None,
        auto_reconnect: bool = False,
    ) -> bool:
        return await join_room(self, code, name, avatar, auto_reconnect=auto_reconnect)

    async def leave_room(self, explicit: bool = True) -> None:
        await leave_room(self, explicit=explicit)

    async def check_room_exists(self, code: str) -> dict[str, Any] | None:
        try:
            return await check_room_exists(self.store, code)
        except SessionError:
            logger.warning("Room lookup failed for %s", code, exc_info=True)
            return None

    # -- host operations -------------------------------------------------

    async def start_game(self, overrides: Mapping[str, Any] | None = None) -> bool:
        return await start_game(self, overrides)

    async def advance_phase(self, next_phase: Phase, skip_grace: bool = False) -> bool:
        return await advance_phase(self, next_phase, skip_grace=skip_grace)

    async def advance_reveal(self) -> bool:
        return await advance_reveal(self)

    async def continue_after_scoreboard(self) -> bool:
        return await continue_after_scoreboard(self)

    async def _write_room_settings(self, room_settings: dict[str, Any]) -> bool:
        room = self.room
        if room is None:
            return False
        self.mirror.set_room_local(settings=room_settings)
        record = await self.store.update_room(room.id, settings=room_settings)
        if record is None:
            return False
        self.mirror.fences.confirm(("room", room.id), record.revision)
        return True

    async def update_room_settings(self, partial: Mapping[str, Any]) -> bool:
        snapshot = self.snapshot()
        if not snapshot.is_host or snapshot.room is None:
            return False
        try:
            patch = RoomSettingsPatch.model_validate(dict(partial))
        except ValidationError as exc:
            logger.warning("Rejected room settings update: %s", exc.errors())
            return False
        room_settings = copy.deepcopy(snapshot.settings)
        room_settings.update(patch.model_dump(exclude_none=True))
        try:
            return await self._write_room_settings(room_settings)
        except SessionError:
            logger.warning("Room settings write failed", exc_info=True)
            return False

    async def kick_player(self, player_id: str) -> bool:
        snapshot = self.snapshot()
        target = snapshot.player(player_id)
        if not snapshot.is_host or target is None or player_id == snapshot.my_player_id:
            return False
        room_settings = copy.deepcopy(snapshot.settings)
        kicked_names = list(room_settings.get("kicked_names") or [])
        if target.name and target.name not in kicked_names:
            kicked_names.append(target.name)
        room_settings["kicked_names"] = kicked_names
        if target.fingerprint:
            kicked_fingerprints = list(room_settings.get("kicked_fingerprints") or [])
            if target.fingerprint not in kicked_fingerprints:
                kicked_fingerprints.append(target.fingerprint)
            room_settings["kicked_fingerprints"] = kicked_fingerprints
        try:
            await self._write_room_settings(room_settings)
            await self.store.delete_player(player_id)
        except SessionError:
            logger.warning("Kick of %s failed", identity_for_logs(player_id), exc_info=True)
            return False
        self.mirror.remove_player(player_id)
        log_session_event(logger, "player_kicked", roomId=snapshot.room.id, player=identity_for_logs(player_id))  # type: ignore[union-attr]
        return True

    async def timeout_player(self, player_id: str) -> bool:
        snapshot = self.snapshot()
        if not snapshot.is_host or snapshot.room is None or player_id == snapshot.my_player_id:
            return False
        try:
            await self.store.delete_player(player_id)
        except SessionError:
            logger.warning("Timeout of %s failed", identity_for_logs(player_id), exc_info=True)
            return False
        self.mirror.remove_player(player_id)
        self.offline_since.pop(player_id, None)
        self.away_since.pop(player_id, None)
        log_session_event(logger, "player_timed_out", roomId=snapshot.room.id, player=identity_for_logs(player_id))
        return True

    async def promote_player_to_host(self, player_id: str) -> bool:
        snapshot = self.snapshot()
        target = snapshot.player(player_id)
        me = snapshot.me
        if not snapshot.is_host or target is None or me is None or target.id == me.id:
            return False
        room_settings = copy.deepcopy(snapshot.settings)
        room_settings["manual_host_id"] = target.id
        room_settings["spectatorEnabled"] = False
        self.mirror.set_player_local(target.id, is_host=True)
        self.mirror.set_player_local(me.id, is_host=False)
        try:
            await self._write_room_settings(room_settings)
            promoted = await self.store.update_player(target.id, is_host=True)
            demoted = await self.store.update_player(me.id, is_host=False)
        except SessionError:
            logger.warning("Host handover failed", exc_info=True)
            return False
        for record in (promoted, demoted):
            if record is not None:
                self.mirror.fences.confirm(("player", record.id), record.revision)
        logger.error(
            "[HOST_REASSIGNED] room=%s new_host=%s previous=%s",
            snapshot.room.room_code,  # type: ignore[union-attr]
            identity_for_logs(target.id),
            identity_for_logs(me.id),
        )
        return promoted is not None

    # -- player operations -----------------------------------------------

    async def _write_answer(self, player_id: str, value: str | None) -> bool:
        try:
            record = await self.store.update_player(player_id, last_answer=value)
        except SessionError:
            logger.warning("Answer write failed for %s", identity_for_logs(player_id), exc_info=True)
            return False
        if record is None:
            return False
        self.mirror.fences.confirm(("answer", player_id), record.revision)
        return True

    async def _retry_submission(self, generation: int, player_id: str, value: str, phase: Phase) -> None:
        for attempt in range(1, self.timings.submission_retry_attempts + 1):
            await asyncio.sleep(self.timings.submission_retry_ms / 1000)
            if generation != self._generation or self.phase != phase:
                return
            if await self._write_answer(player_id, value):
                logger.info("Submission landed on retry %s", attempt)
                return
        logger.warning("Giving up on submission for %s in %s", identity_for_logs(player_id), phase)

    async def submit_answer(self, answer: str) -> bool:
        snapshot = self.snapshot()
        me = snapshot.me
        phase = snapshot.phase
        if me is None or phase not in ANSWER_PHASES:
            return False
        value = with_final_prefix(phase, answer)
        if me.last_answer == value:
            return True
        self.mirror.set_answer_local(me.id, value)
        if await self._write_answer(me.id, value):
            return True
        self._spawn(self._retry_submission(self._generation, me.id, value, phase))
        return False

    async def save_draft(self, text: str) -> bool:
        snapshot = self.snapshot()
        me = snapshot.me
        phase = snapshot.phase
        prefix = draft_prefix_for_phase(phase)
        if me is None or prefix is None or not str(text or "").strip():
            return False
        if is_final_for_phase(me.last_answer, phase):
            return False
        value = f"{prefix}{text}"
        if me.last_answer == value:
            return True
        self.mirror.set_answer_local(me.id, value)
        return await self._write_answer(me.id, value)

    async def submit_votes(self, entries: Iterable[VoteEntry | Mapping[str, Any]]) -> bool:
        snapshot = self.snapshot()
        me = snapshot.me
        if me is None or snapshot.phase != "vote":
            return False
        try:
            parsed = [
                entry if isinstance(entry, VoteEntry) else VoteEntry.model_validate(dict(entry))
                for entry in entries
            ]
        except ValidationError as exc:
            logger.warning("Rejected votes: %s", exc.errors())
            return False
        if not parsed or any(entry.targetId == me.id for entry in parsed):
            return False
        remaining = remaining_votes(score_to_win(snapshot.settings), me.votes_used, parsed)
        if any(value < 0 for value in remaining.values()):
            logger.info("Vote budget exceeded for %s: %s", identity_for_logs(me.id), remaining)
            return False
        return await self.submit_answer(encode_votes(parsed))

    async def set_away(self, away: bool) -> bool:
        presence = self.presence
        me_id = self.my_player_id
        if presence is None or me_id is None:
            return False
        try:
            await presence.track(PresenceMeta(player_id=me_id, is_away=away, online_at=self._presence_since))
        except Exception:
            logger.warning("Presence update failed", exc_info=True)
            return False
        return True
