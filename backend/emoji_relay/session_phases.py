from __future__ import annotations

from typing import Any, Iterable, Mapping

from .session_answers import is_final_for_phase
from .session_chains import ordered_chain_ids
from .session_constants import (
    DEFAULT_ROUND_TIME_SECONDS,
    DEFAULT_SCORE_TO_WIN,
    DEFAULT_VOTE_DURATION_SECONDS,
    EMOJI_ONLY_MODE,
    EMOJI_ONLY_PHASE_ORDER,
    GAMEPLAY_PHASES,
    MIN_PLAYERS_TO_CONTINUE,
    PHASE_PRIORITY,
    PHASE_START_BUFFER_MS,
    STANDARD_PHASE_ORDER,
    UNTIMED_PHASES,
)
from .session_types import Phase, PlayerRecord


def gameplay_order(mode: str | None) -> tuple[Phase, ...]:
    if mode == EMOJI_ONLY_MODE:
        return EMOJI_ONLY_PHASE_ORDER
    return STANDARD_PHASE_ORDER


def completed_rounds(phase: Phase, mode: str | None) -> int:
    order = gameplay_order(mode)
    if phase not in order:
        return 0
    return order.index(phase) + 1


def next_phase(current: Phase, mode: str | None, participant_count: int = 0) -> Phase:
    if current == "lobby":
        return "text"
    order = gameplay_order(mode)
    if current in order:
        done = order.index(current) + 1
        if done >= len(order):
            return "reveal"
        # A chain may never come back to someone who already touched it.
        if participant_count > 0 and done >= participant_count:
            return "reveal"
        return order[done]
    if current == "reveal":
        return "vote"
    if current == "vote":
        return "scoreboard"
    if current == "scoreboard":
        return "text"
    return "lobby"


def phase_priority(phase: str | None) -> int:
    return PHASE_PRIORITY.get(phase or "lobby", 0)  # type: ignore[arg-type]


def is_transition_allowed(current: Phase | None, incoming: Phase) -> bool:
    if current is None or current == incoming:
        return True
    if incoming == "lobby":
        return True
    if incoming == "text":
        return current in ("scoreboard", "lobby")
    return phase_priority(incoming) > phase_priority(current)


def _setting_int(settings: Mapping[str, Any], key: str, default: int) -> int:
    try:
        value = int(settings.get(key) or default)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def phase_duration_seconds(phase: Phase, settings: Mapping[str, Any]) -> int:
    if phase == "vote":
        return _setting_int(settings, "voteDuration", DEFAULT_VOTE_DURATION_SECONDS)
    if phase in GAMEPLAY_PHASES:
        return _setting_int(settings, "roundTime", DEFAULT_ROUND_TIME_SECONDS)
    return DEFAULT_ROUND_TIME_SECONDS


def phase_expiry(phase: Phase, settings: Mapping[str, Any], now: int) -> int | None:
    if phase in UNTIMED_PHASES:
        return None
    return now + phase_duration_seconds(phase, settings) * 1000 + PHASE_START_BUFFER_MS


def score_to_win(settings: Mapping[str, Any]) -> int:
    return _setting_int(settings, "scoreToWin", DEFAULT_SCORE_TO_WIN)


def is_round_ready(
    phase: Phase,
    assigned_online: Iterable[str],
    players: Mapping[str, PlayerRecord],
) -> bool:
    ids = list(assigned_online)
    if not ids:
        return False
    for player_id in ids:
        player = players.get(player_id)
        if player is None or not is_final_for_phase(player.last_answer, phase):
            return False
    return True


def scoreboard_follow_up(
    players: Iterable[PlayerRecord],
    settings: Mapping[str, Any],
    online_playing_count: int,
) -> Phase:
    target = score_to_win(settings)
    if any(int(player.score or 0) >= target for player in players):
        return "winner"
    if online_playing_count < MIN_PLAYERS_TO_CONTINUE:
        return "lobby"
    return "text"


def reveal_cursor_step(settings: Mapping[str, Any]) -> tuple[Phase | None, int, int]:
    """Next (phase, chain_index, step) for the host-driven reveal.

    Returns ("vote", ...) once the last entry of the last chain is shown.
    """
    chain_table = settings.get("chains") or {}
    order = [str(pid) for pid in settings.get("player_order") or []]
    chains = [chain_table[chain_id] for chain_id in ordered_chain_ids(chain_table, order)]
    index = int(settings.get("reveal_chain_index") or 0)
    step = int(settings.get("reveal_step") or 0)
    if not chains:
        return "vote", index, step
    index = min(max(0, index), len(chains) - 1)
    length = len(chains[index].get("history") or [])
    if step < length:
        return None, index, step + 1
    if index < len(chains) - 1:
        return None, index + 1, 1
    return "vote", index, step
