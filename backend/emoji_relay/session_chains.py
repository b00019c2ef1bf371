from __future__ import annotations

import copy
import logging
import random
import time
from typing import Any, Iterable, Mapping

from .session_answers import answer_payload, placeholder_for
from .session_constants import GHOST_PLAYER_ID

logger = logging.getLogger(__name__)

Chain = dict[str, Any]
Assignment = dict[str, str]


class _SolverBudgetExceeded(Exception):
    pass


def chain_id_for(player_id: str, now: int) -> str:
    return f"chain_{player_id}_{now}"


def has_contributed(chain: Mapping[str, Any], player_id: str) -> bool:
    if chain.get("creator_id") == player_id:
        return True
    return any(entry.get("playerId") == player_id for entry in chain.get("history") or [])


def ordered_chain_ids(chains: Mapping[str, Chain], player_order: Iterable[str]) -> list[str]:
    order = list(player_order)
    positions = {player_id: index for index, player_id in enumerate(order)}

    def sort_key(chain_id: str) -> tuple[int, str]:
        creator = chains[chain_id].get("creator_id")
        return positions.get(creator, len(order)), chain_id

    return sorted(chains, key=sort_key)


def create_round_chains(player_ids: Iterable[str], now: int) -> tuple[dict[str, Chain], Assignment]:
    chains: dict[str, Chain] = {}
    assignment: Assignment = {}
    for player_id in player_ids:
        chain_id = chain_id_for(player_id, now)
        chains[chain_id] = {"id": chain_id, "creator_id": player_id, "history": []}
        assignment[player_id] = chain_id
    return chains, assignment


def solve_assignment(
    player_ids: Iterable[str],
    chains: Mapping[str, Chain],
    chain_ids: Iterable[str],
    *,
    step_limit: int = 50_000,
    timeout_ms: int = 250,
    rng: random.Random | None = None,
) -> Assignment | None:
    """Random bijection players -> chains that never hands a chain back to a contributor.

    Returns None when no such bijection exists or the search budget runs out.
    """
    rand = rng or random
    players = list(player_ids)
    candidates = [chain_id for chain_id in chain_ids if chain_id in chains]
    if len(players) != len(candidates):
        return None
    rand.shuffle(players)
    rand.shuffle(candidates)

    seen = {
        player_id: {chain_id for chain_id in candidates if has_contributed(chains[chain_id], player_id)}
        for player_id in players
    }
    deadline = time.monotonic() + max(1, timeout_ms) / 1000
    steps = 0
    result: Assignment = {}

    def solve(index: int, available: list[str]) -> bool:
        nonlocal steps
        if index == len(players):
            return True
        steps += 1
        if steps > step_limit or time.monotonic() > deadline:
            raise _SolverBudgetExceeded()
        player_id = players[index]
        options = [chain_id for chain_id in available if chain_id not in seen[player_id]]
        rand.shuffle(options)
        for chain_id in options:
            result[player_id] = chain_id
            if solve(index + 1, [item for item in available if item != chain_id]):
                return True
            result.pop(player_id, None)
        return False

    try:
        if solve(0, candidates):
            return dict(result)
    except _SolverBudgetExceeded:
        logger.warning("Chain assignment search gave up after %s steps", steps)
    return None


def rotation_assignment(player_ids: Iterable[str], chain_ids: Iterable[str], offset: int) -> Assignment:
    players = list(player_ids)
    chain_list = list(chain_ids)
    if not chain_list:
        return {}
    assignment: Assignment = {}
    for index, player_id in enumerate(players[: len(chain_list)]):
        assignment[player_id] = chain_list[(index + offset) % len(chain_list)]
    return assignment


def assign_chains(
    player_order: Iterable[str],
    chains: Mapping[str, Chain],
    *,
    round_index: int,
    step_limit: int = 50_000,
    timeout_ms: int = 250,
    rng: random.Random | None = None,
) -> tuple[Assignment, bool]:
    """Returns (assignment, degraded). Degraded means the rotation fallback was used."""
    order = list(player_order)
    chain_ids = ordered_chain_ids(chains, order)[: len(order)]
    solved = solve_assignment(
        order,
        chains,
        chain_ids,
        step_limit=step_limit,
        timeout_ms=timeout_ms,
        rng=rng,
    )
    if solved is not None:
        return solved, False
    logger.warning(
        "Chain assignment fell back to rotation players=%s chains=%s round=%s",
        len(order),
        len(chain_ids),
        round_index,
    )
    return rotation_assignment(order, chain_ids, round_index), True


def fold_phase_into_chains(
    chains: Mapping[str, Chain],
    assignment: Mapping[str, str],
    answers: Mapping[str, str | None],
    phase: str,
    online_ids: Iterable[str],
) -> dict[str, Chain]:
    folded = copy.deepcopy(dict(chains))
    online = set(online_ids)
    author_by_chain = {chain_id: player_id for player_id, chain_id in assignment.items()}
    for chain_id, chain in folded.items():
        history = chain.setdefault("history", [])
        if any(entry.get("phase") == phase for entry in history):
            continue
        player_id = author_by_chain.get(chain_id)
        content = answer_payload(answers.get(player_id)).strip() if player_id else ""
        if not content:
            content = placeholder_for(phase, bool(player_id) and player_id in online)
        history.append(
            {
                "phase": phase,
                "playerId": player_id or GHOST_PLAYER_ID,
                "content": content,
            }
        )
    return folded
