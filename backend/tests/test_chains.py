from __future__ import annotations

import random

from emoji_relay.session_chains import (
    assign_chains,
    create_round_chains,
    fold_phase_into_chains,
    ordered_chain_ids,
    rotation_assignment,
    solve_assignment,
)
from emoji_relay.session_constants import GHOST_PLAYER_ID, STANDARD_PHASE_ORDER
from emoji_relay.session_answers import placeholder_for


def _play_round(players, phases, rng, online=None):
    chains, assignment = create_round_chains(players, now=1000)
    online_ids = set(players if online is None else online)
    history = []
    for index, phase in enumerate(phases):
        if index > 0:
            assignment, degraded = assign_chains(players, chains, round_index=index, rng=rng)
            assert not degraded
        history.append(dict(assignment))
        answers = {player_id: f"{phase}:{player_id}" for player_id in players}
        chains = fold_phase_into_chains(chains, assignment, answers, phase, online_ids)
    return chains, history


def test_create_round_chains_gives_each_player_their_own_chain():
    chains, assignment = create_round_chains(["a", "b", "c"], now=5)
    assert len(chains) == 3
    assert {chains[chain_id]["creator_id"] for chain_id in chains} == {"a", "b", "c"}
    assert all(chains[assignment[pid]]["creator_id"] == pid for pid in assignment)


def test_no_player_ever_sees_a_chain_twice():
    rng = random.Random(7)
    for size in range(2, 9):
        players = [f"p{index}" for index in range(size)]
        phases = STANDARD_PHASE_ORDER[:size]
        chains, history = _play_round(players, phases, rng)
        for chain_id, chain in chains.items():
            contributors = [entry["playerId"] for entry in chain["history"]]
            assert len(contributors) == len(set(contributors)), chain_id
        for assignment in history:
            assert sorted(assignment) == sorted(players)
            assert len(set(assignment.values())) == len(players)


def test_solver_returns_none_when_no_fresh_chain_exists():
    chains = {
        "c1": {"creator_id": "a", "history": [{"playerId": "b"}]},
        "c2": {"creator_id": "b", "history": [{"playerId": "a"}]},
    }
    assert solve_assignment(["a", "b"], chains, ["c1", "c2"]) is None


def test_solver_rejects_mismatched_counts():
    chains, _ = create_round_chains(["a", "b", "c"], now=1)
    assert solve_assignment(["a", "b"], chains, list(chains)) is None


def test_solver_budget_exhaustion_falls_back_to_rotation():
    players = [f"p{index}" for index in range(6)]
    chains, _ = create_round_chains(players, now=1)
    assignment, degraded = assign_chains(players, chains, round_index=2, step_limit=0)
    assert degraded
    chain_ids = ordered_chain_ids(chains, players)
    assert assignment == rotation_assignment(players, chain_ids, 2)


def test_rotation_assignment_offsets_by_round():
    assert rotation_assignment(["a", "b", "c"], ["x", "y", "z"], 1) == {"a": "y", "b": "z", "c": "x"}
    assert rotation_assignment(["a"], [], 1) == {}


def test_fold_uses_placeholders_and_ghost_for_gaps():
    chains, assignment = create_round_chains(["a", "b"], now=1)
    del assignment["b"]
    folded = fold_phase_into_chains(chains, assignment, {"a": "text:"}, "text", online_ids={"a"})
    by_creator = {chain["creator_id"]: chain for chain in folded.values()}
    assert by_creator["a"]["history"][0] == {
        "phase": "text",
        "playerId": "a",
        "content": placeholder_for("text", True),
    }
    assert by_creator["b"]["history"][0]["playerId"] == GHOST_PLAYER_ID
    assert by_creator["b"]["history"][0]["content"] == placeholder_for("text", False)
    # Input chains are left untouched.
    assert all(not chain["history"] for chain in chains.values())


def test_fold_is_idempotent_per_phase():
    chains, assignment = create_round_chains(["a", "b"], now=1)
    once = fold_phase_into_chains(chains, assignment, {"a": "text:x", "b": "text:y"}, "text", {"a", "b"})
    twice = fold_phase_into_chains(once, assignment, {"a": "text:z", "b": "text:z"}, "text", {"a", "b"})
    assert once == twice


def test_offline_author_gets_offline_placeholder():
    chains, assignment = create_round_chains(["a", "b"], now=1)
    folded = fold_phase_into_chains(chains, assignment, {"a": "", "b": "text:hi"}, "text", {"b"})
    by_creator = {chain["creator_id"]: chain for chain in folded.values()}
    assert by_creator["a"]["history"][0]["content"] == placeholder_for("text", False)
    assert by_creator["b"]["history"][0]["content"] == "hi"
