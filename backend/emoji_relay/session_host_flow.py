from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Literal, Mapping

from .config import SessionTimings
from .session_answers import (
    answer_payload,
    final_prefix_for_phase,
    is_final_for_phase,
    is_submission_for_phase,
    known_prefix,
    merge_answers,
    placeholder_for,
)
from .session_chains import assign_chains, create_round_chains, fold_phase_into_chains
from .session_constants import (
    ANSWER_PHASES,
    DEFAULT_ROUND_TIME_SECONDS,
    DEFAULT_VOTE_DURATION_SECONDS,
    GAMEPLAY_PHASES,
    MIN_ACTIVE_PLAYERS,
    MIN_PLAYERS_TO_START,
    NAVIGATIONAL_PHASES,
    SETTINGS_KEYS,
    SPECTATOR_MIN_PARTICIPANTS,
)
from .session_errors import StaleWriteConflict
from .session_phases import (
    completed_rounds,
    is_round_ready,
    is_transition_allowed,
    next_phase,
    phase_duration_seconds,
    phase_expiry,
    reveal_cursor_step,
    scoreboard_follow_up,
)
from .session_scoring import ScoreUpdate, tally_votes
from .session_types import Phase, PlayerRecord, RoomStatus, SessionSnapshot
from .session_utils import log_session_event, now_ms, shuffle

if TYPE_CHECKING:
    from .session import RoomSession

logger = logging.getLogger(__name__)


class TransitionGate:
    """Re-entrancy lock for phase changes that stays held for a settle delay."""

    def __init__(self, settle_ms: int = 1000) -> None:
        self.settle_ms = settle_ms
        self._lock = asyncio.Lock()
        self._release_handle: asyncio.TimerHandle | None = None

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    async def try_acquire(self) -> bool:
        if self._lock.locked():
            return False
        await self._lock.acquire()
        return True

    def release_later(self) -> None:
        if self.settle_ms <= 0:
            self._release()
            return
        loop = asyncio.get_running_loop()
        self._release_handle = loop.call_later(self.settle_ms / 1000, self._release)

    def _release(self) -> None:
        self._release_handle = None
        if self._lock.locked():
            self._lock.release()

    def reset(self) -> None:
        if self._release_handle is not None:
            self._release_handle.cancel()
        self._release()


@dataclass(frozen=True)
class HostAction:
    kind: Literal["advance", "collapse"]
    next_phase: Phase
    reason: str


@dataclass
class TransitionPlan:
    current_phase: Phase
    next_phase: Phase
    settings: dict[str, Any]
    phase_expiry: int | None
    timer: int
    answers: dict[str, str] = field(default_factory=dict)
    status: RoomStatus | None = None
    score_updates: dict[str, ScoreUpdate] = field(default_factory=dict)
    clear_answers: bool = False
    reset_players: bool = False
    degraded: bool = False


def decide_host_action(
    snapshot: SessionSnapshot,
    now: int,
    timings: SessionTimings,
) -> HostAction | None:
    if not snapshot.is_host or snapshot.room is None or snapshot.game_state is None:
        return None
    phase = snapshot.phase
    if phase not in ANSWER_PHASES:
        return None
    order = snapshot.player_order
    assigned_online = [player_id for player_id in order if snapshot.is_online(player_id)]
    if len(assigned_online) < MIN_ACTIVE_PLAYERS:
        return HostAction("collapse", "scoreboard", "population")

    upcoming = next_phase(phase, snapshot.settings.get("selectedMode"), len(order))
    if is_round_ready(phase, assigned_online, snapshot.players_by_id()):
        return HostAction("advance", upcoming, "ready")
    expiry = snapshot.game_state.phase_expiry
    if expiry is not None and now > expiry + timings.expiry_drift_ms:
        return HostAction("advance", upcoming, "timeout")
    return None


def _content_for_phase(raw: str | None, phase: Phase) -> str:
    if is_submission_for_phase(raw, phase):
        return answer_payload(raw).strip()
    if phase == "text" and raw and not known_prefix(raw):
        return raw.strip()
    return ""


def collect_phase_answers(
    phase: Phase,
    player_order: Iterable[str],
    players: Mapping[str, PlayerRecord],
    online_ids: Iterable[str],
) -> dict[str, str]:
    """Final-or-fallback answer per assigned player, with the phase's final prefix."""
    online = set(online_ids)
    prefix = final_prefix_for_phase(phase) or ""
    answers: dict[str, str] = {}
    for player_id in player_order:
        player = players.get(player_id)
        raw = player.last_answer if player is not None else None
        if phase == "vote":
            answers[player_id] = raw if is_final_for_phase(raw, phase) else ""
            continue
        content = _content_for_phase(raw, phase)
        if not content:
            content = placeholder_for(phase, player_id in online)
        answers[player_id] = f"{prefix}{content}"
    return answers


def merge_polled_players(
    phase: Phase,
    local: Mapping[str, PlayerRecord],
    fetched: Iterable[PlayerRecord],
) -> dict[str, PlayerRecord]:
    merged: dict[str, PlayerRecord] = {}
    for player in fetched:
        copy_player = player.copy()
        local_player = local.get(player.id)
        if local_player is not None:
            copy_player.last_answer = merge_answers(local_player.last_answer, player.last_answer, phase)
        merged[player.id] = copy_player
    for player_id, player in local.items():
        merged.setdefault(player_id, player.copy())
    return merged


def start_round_settings(
    settings: Mapping[str, Any],
    participants: list[str],
    players: Mapping[str, PlayerRecord],
    now: int,
) -> dict[str, Any]:
    updated = copy.deepcopy(dict(settings))
    chains, text_assignment = create_round_chains(participants, now)
    names = dict(updated.get("player_names") or {})
    for player_id, player in players.items():
        names[player_id] = player.name
    updated.update(
        player_order=list(participants),
        player_names=names,
        chains=chains,
        assignments={"text": text_assignment},
        history={},
        reveal_chain_index=0,
        reveal_step=0,
    )
    return updated


def round_participants(
    players: Iterable[PlayerRecord],
    settings: Mapping[str, Any],
    online_ids: Iterable[str],
    my_player_id: str | None,
) -> list[str]:
    online = set(online_ids)
    eligible = [player for player in players if player.id in online or player.id == my_player_id]
    spectator_mode = bool(settings.get("spectatorEnabled")) and len(eligible) >= SPECTATOR_MIN_PARTICIPANTS
    return shuffle(player.id for player in eligible if not (spectator_mode and player.is_host))


def plan_transition(
    current: Phase,
    upcoming: Phase,
    settings: Mapping[str, Any],
    players: Mapping[str, PlayerRecord],
    online_ids: Iterable[str],
    answers: Mapping[str, str],
    *,
    my_player_id: str | None,
    now: int,
    timings: SessionTimings | None = None,
) -> TransitionPlan:
    cfg = timings or SessionTimings()
    online = set(online_ids)
    expiry = phase_expiry(upcoming, settings, now)
    next_settings = copy.deepcopy(dict(settings))
    next_settings["phase_expiry"] = expiry
    plan = TransitionPlan(
        current_phase=current,
        next_phase=upcoming,
        settings=next_settings,
        phase_expiry=expiry,
        timer=phase_duration_seconds(upcoming, settings),
        answers=dict(answers),
    )

    if current in GAMEPLAY_PHASES:
        assignment = (next_settings.get("assignments") or {}).get(current) or {}
        next_settings["chains"] = fold_phase_into_chains(
            next_settings.get("chains") or {},
            assignment,
            answers,
            current,
            online,
        )
        next_settings["history"] = {**(next_settings.get("history") or {}), current: dict(answers)}
    elif current == "vote":
        next_settings["history"] = {**(next_settings.get("history") or {}), current: dict(answers)}

    names = dict(next_settings.get("player_names") or {})
    for player_id, player in players.items():
        if player.name:
            names[player_id] = player.name
    next_settings["player_names"] = names

    if upcoming == "text":
        participants = round_participants(
            sorted(players.values(), key=lambda item: (item.created_at, item.id)),
            next_settings,
            online,
            my_player_id,
        )
        plan.settings = next_settings = start_round_settings(next_settings, participants, players, now)
        next_settings["phase_expiry"] = expiry
        plan.clear_answers = True
    elif upcoming in GAMEPLAY_PHASES:
        order = [str(pid) for pid in next_settings.get("player_order") or []]
        assignment, degraded = assign_chains(
            order,
            next_settings.get("chains") or {},
            round_index=completed_rounds(current, next_settings.get("selectedMode")),
            step_limit=cfg.solver_step_limit,
            timeout_ms=cfg.solver_timeout_ms,
        )
        next_settings["assignments"] = {**(next_settings.get("assignments") or {}), upcoming: assignment}
        plan.degraded = degraded
        plan.clear_answers = True
    elif upcoming == "vote":
        plan.clear_answers = True

    if upcoming == "reveal":
        next_settings["reveal_step"] = 0
        next_settings["reveal_chain_index"] = 0

    if upcoming == "lobby":
        next_settings["history"] = {}
        next_settings["assignments"] = {}
        next_settings["player_order"] = []
        next_settings["chains"] = {}
        plan.status = "lobby"
        plan.reset_players = True

    if current == "vote" and upcoming == "scoreboard":
        plan.score_updates = tally_votes(answers, players)

    return plan


async def wait_for_laggards(
    session: "RoomSession",
    snapshot: SessionSnapshot,
    phase: Phase,
) -> dict[str, PlayerRecord]:
    """Polls the store until every online assigned player has at least a draft."""
    local = snapshot.players_by_id()
    online_assigned = [pid for pid in snapshot.player_order if snapshot.is_online(pid)]

    def ready_count(players: Mapping[str, PlayerRecord]) -> int:
        return sum(
            1
            for pid in online_assigned
            if pid in players and is_submission_for_phase(players[pid].last_answer, phase)
        )

    if ready_count(local) >= len(online_assigned):
        return local

    loop = asyncio.get_running_loop()
    deadline = loop.time() + session.timings.laggard_wait_ms / 1000
    latest: list[PlayerRecord] = []
    while loop.time() < deadline:
        try:
            polled = await session.store.list_players(snapshot.room.id)  # type: ignore[union-attr]
        except Exception:
            logger.warning("Laggard poll failed", exc_info=True)
            polled = []
        if polled:
            latest = polled
            if ready_count({player.id: player for player in polled}) >= len(online_assigned):
                break
        await asyncio.sleep(session.timings.laggard_poll_ms / 1000)

    if not latest:
        return local
    return merge_polled_players(phase, local, latest)


async def advance_phase(
    session: "RoomSession",
    upcoming: Phase,
    skip_grace: bool = False,
    reason: str = "manual",
) -> bool:
    snapshot = session.snapshot()
    if not snapshot.is_host or snapshot.room is None or snapshot.game_state is None:
        return False
    current = snapshot.phase
    if current == upcoming or not is_transition_allowed(current, upcoming):
        logger.warning("Phase transition %s -> %s blocked", current, upcoming)
        return False
    if not await session.gate.try_acquire():
        logger.info("Phase transition %s -> %s blocked by pending transition", current, upcoming)
        return False
    try:
        return await _commit_advance(session, snapshot, upcoming, skip_grace or upcoming in NAVIGATIONAL_PHASES, reason)
    except Exception:
        logger.exception("Phase transition %s -> %s failed", current, upcoming)
        return False
    finally:
        session.gate.release_later()


async def _commit_advance(
    session: "RoomSession",
    snapshot: SessionSnapshot,
    upcoming: Phase,
    skip_grace: bool,
    reason: str,
) -> bool:
    store = session.store
    room = snapshot.room
    assert room is not None
    current = snapshot.phase

    fresh_state = await store.get_game_state(room.id)
    if fresh_state is not None and fresh_state.phase != current:
        logger.info("Phase already moved to %s, skipping %s -> %s", fresh_state.phase, current, upcoming)
        session.mirror.apply_game_state(fresh_state, now_ms())
        return False
    fresh_room = await store.get_room(room.id)
    settings = (fresh_room or room).settings

    players = snapshot.players_by_id()
    answers: dict[str, str] = {}
    if current in ANSWER_PHASES:
        if not skip_grace:
            players = await wait_for_laggards(session, snapshot, current)
        answers = collect_phase_answers(
            current,
            [str(pid) for pid in settings.get("player_order") or []],
            players,
            snapshot.online_ids(),
        )

    now_value = now_ms()
    plan = plan_transition(
        current,
        upcoming,
        settings,
        players,
        snapshot.online_ids(),
        answers,
        my_player_id=snapshot.my_player_id,
        now=now_value,
        timings=session.timings,
    )

    session.mirror.set_game_state_local(upcoming, plan.phase_expiry, now=now_value)
    state = await store.update_game_state(
        room.id,
        phase=upcoming,
        phase_expiry=plan.phase_expiry,
        timer=plan.timer,
        expected_phase=current,
    )
    if state is None:
        conflict = StaleWriteConflict(f"phase of room {room.id} moved away from {current}")
        logger.warning("%s, resyncing", conflict)
        session.mirror.fences.release(("game_state", room.id))
        session.mirror.game_state = snapshot.game_state
        session._spawn(session.refresh_room_state())
        return False
    session.mirror.fences.confirm(("game_state", room.id), state.revision)

    # Only the advance that won the phase write may touch answers and settings.
    if plan.reset_players:
        await store.update_players(room.id, None, score=0, votes_used={}, last_answer=None)
        session.mirror.clear_answers_local()
    elif plan.clear_answers:
        await store.update_players(room.id, None, last_answer=None)
        session.mirror.clear_answers_local()

    session.mirror.set_room_local(settings=plan.settings, status=plan.status, now=now_value)
    writes: list[Any] = [store.update_room(room.id, settings=plan.settings, status=plan.status)]
    writes.extend(
        store.update_player(update.player_id, score=update.score, votes_used=update.votes_used)
        for update in plan.score_updates.values()
    )
    results = await asyncio.gather(*writes)
    room_record = results[0]
    if room_record is not None:
        session.mirror.fences.confirm(("room", room.id), room_record.revision)

    logger.info(
        "[PHASE_ADVANCE] room=%s from=%s to=%s reason=%s degraded=%s",
        room.room_code,
        current,
        upcoming,
        reason,
        plan.degraded,
    )
    log_session_event(
        logger,
        "phase_advance",
        roomId=room.id,
        fromPhase=current,
        toPhase=upcoming,
        reason=reason,
        expiry=plan.phase_expiry,
    )
    return True


async def run_host_monitor(session: "RoomSession", now: int | None = None) -> bool:
    now_value = now if now is not None else now_ms()
    snapshot = session.snapshot(now_value)
    action = decide_host_action(snapshot, now_value, session.timings)
    if action is None:
        session.collapse_since = None
        return False

    if action.kind == "collapse":
        if session.collapse_since is None:
            session.collapse_since = now_value
            session._notify("collapse", "Not enough players online, heading to the scoreboard", "collapse")
            return False
        if now_value - session.collapse_since < session.timings.collapse_grace_ms:
            return False
        session.collapse_since = None
        return await advance_phase(session, "scoreboard", skip_grace=True, reason=action.reason)

    session.collapse_since = None
    return await advance_phase(session, action.next_phase, reason=action.reason)


async def start_game(session: "RoomSession", overrides: Mapping[str, Any] | None = None) -> bool:
    snapshot = session.snapshot()
    room = snapshot.room
    if not snapshot.is_host or room is None or snapshot.phase != "lobby":
        return False
    if not await session.gate.try_acquire():
        return False
    try:
        settings = copy.deepcopy(snapshot.settings)
        for key, value in (overrides or {}).items():
            if key in SETTINGS_KEYS:
                settings[key] = value
        settings.setdefault("roundTime", DEFAULT_ROUND_TIME_SECONDS)
        settings.setdefault("voteDuration", DEFAULT_VOTE_DURATION_SECONDS)

        participants = round_participants(
            snapshot.players,
            settings,
            snapshot.online_ids(),
            snapshot.my_player_id,
        )
        if len(participants) < MIN_PLAYERS_TO_START:
            logger.info("Start blocked room=%s participants=%s", room.room_code, len(participants))
            return False

        now_value = now_ms()
        expiry = phase_expiry("text", settings, now_value)
        settings = start_round_settings(settings, participants, snapshot.players_by_id(), now_value)
        settings["phase_expiry"] = expiry

        await session.store.update_players(room.id, None, score=0, last_answer=None, votes_used={})
        session.mirror.clear_answers_local()
        session.mirror.set_room_local(settings=settings, status="playing", now=now_value)
        session.mirror.set_game_state_local("text", expiry, now=now_value)

        room_record = await session.store.update_room(room.id, settings=settings, status="playing")
        if room_record is not None:
            session.mirror.fences.confirm(("room", room.id), room_record.revision)
        state = await session.store.update_game_state(
            room.id,
            phase="text",
            phase_expiry=expiry,
            timer=phase_duration_seconds("text", settings),
            expected_phase="lobby",
        )
        if state is None:
            logger.warning("Start of room %s lost to a concurrent transition", room.room_code)
            session._spawn(session.refresh_room_state())
            return False
        session.mirror.fences.confirm(("game_state", room.id), state.revision)
        log_session_event(logger, "game_started", roomId=room.id, players=len(participants))
        return True
    except Exception:
        logger.exception("Failed to start game in room %s", room.room_code)
        return False
    finally:
        session.gate.release_later()


async def advance_reveal(session: "RoomSession") -> bool:
    snapshot = session.snapshot()
    room = snapshot.room
    if not snapshot.is_host or room is None or snapshot.phase != "reveal":
        return False
    upcoming, chain_index, step = reveal_cursor_step(snapshot.settings)
    if upcoming is not None:
        return await advance_phase(session, upcoming, reason="reveal_done")
    settings = copy.deepcopy(snapshot.settings)
    settings["reveal_chain_index"] = chain_index
    settings["reveal_step"] = step
    session.mirror.set_room_local(settings=settings)
    record = await session.store.update_room(room.id, settings=settings)
    if record is not None:
        session.mirror.fences.confirm(("room", room.id), record.revision)
    return record is not None


async def continue_after_scoreboard(session: "RoomSession") -> bool:
    snapshot = session.snapshot()
    if not snapshot.is_host or snapshot.phase != "scoreboard":
        return False
    online_playing = sum(1 for pid in snapshot.player_order if snapshot.is_online(pid))
    follow_up = scoreboard_follow_up(snapshot.players, snapshot.settings, online_playing)
    return await advance_phase(session, follow_up, reason="scoreboard")
