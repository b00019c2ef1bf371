from __future__ import annotations

import pytest

from emoji_relay.config import SessionTimings
from emoji_relay.session_answers import placeholder_for
from emoji_relay.session_host_flow import (
    TransitionGate,
    collect_phase_answers,
    decide_host_action,
    merge_polled_players,
    plan_transition,
    round_participants,
)
from emoji_relay.session_types import GameStateRecord, PlayerRecord, PresenceMeta, RoomRecord, SessionSnapshot


def _player(player_id, answer=None, is_host=False, created_at=0, score=0):
    return PlayerRecord(
        id=player_id,
        room_id="r1",
        name=player_id.upper(),
        is_host=is_host,
        last_answer=answer,
        created_at=created_at,
        score=score,
    )


def _snapshot(phase, players, online, expiry=None, order=None):
    settings = {"player_order": order if order is not None else [player.id for player in players]}
    return SessionSnapshot.capture(
        room=RoomRecord(id="r1", room_code="ABCD", status="playing", settings=settings),
        players=players,
        game_state=GameStateRecord(room_id="r1", phase=phase, phase_expiry=expiry),
        presence={pid: PresenceMeta(player_id=pid) for pid in online},
        my_player_id="h",
        taken_at=0,
    )


def test_host_advances_when_everyone_online_is_final():
    players = [_player("h", "text:a", is_host=True), _player("b", "text:b"), _player("c", None)]
    action = decide_host_action(_snapshot("text", players, online={"h", "b"}), now=0, timings=SessionTimings())
    assert action.kind == "advance"
    assert action.next_phase == "emoji_1"
    assert action.reason == "ready"


def test_host_waits_for_drafts_until_expiry_plus_drift():
    timings = SessionTimings(expiry_drift_ms=2500)
    players = [_player("h", "text:a", is_host=True), _player("b", "draft:b"), _player("c", None)]
    snapshot = _snapshot("text", players, online={"h", "b", "c"}, expiry=10_000)
    assert decide_host_action(snapshot, now=12_500, timings=timings) is None
    action = decide_host_action(snapshot, now=12_501, timings=timings)
    assert action.reason == "timeout"


def test_host_collapses_when_population_drops():
    players = [_player("h", is_host=True), _player("b"), _player("c")]
    action = decide_host_action(_snapshot("emoji_1", players, online={"h"}), now=0, timings=SessionTimings())
    assert action.kind == "collapse"
    assert action.next_phase == "scoreboard"


def test_non_host_and_untimed_phases_never_act():
    players = [_player("h"), _player("b")]
    assert decide_host_action(_snapshot("text", players, online={"h", "b"}), 0, SessionTimings()) is None
    players = [_player("h", is_host=True), _player("b")]
    assert decide_host_action(_snapshot("reveal", players, online={"h", "b"}), 0, SessionTimings()) is None


def test_collect_answers_fills_placeholders():
    players = {
        "a": _player("a", "text:  hello "),
        "b": _player("b", "draft:half done"),
        "c": _player("c", None),
        "d": _player("d", "emoji:🐱"),
    }
    answers = collect_phase_answers("text", ["a", "b", "c", "d"], players, online_ids={"a", "b", "d"})
    assert answers["a"] == "text:hello"
    assert answers["b"] == "text:half done"
    assert answers["c"] == "text:" + placeholder_for("text", False)
    assert answers["d"] == "text:" + placeholder_for("text", True)


def test_collect_votes_keeps_only_finals():
    players = {"a": _player("a", "vote:funniest:b"), "b": _player("b", "draft_vote:x")}
    assert collect_phase_answers("vote", ["a", "b"], players, {"a", "b"}) == {"a": "vote:funniest:b", "b": ""}


def test_polled_answers_merge_with_local_by_rank():
    local = {"a": _player("a", "emoji:🐶"), "b": _player("b", None)}
    fetched = [_player("a", "draft_emoji:🐶"), _player("b", "emoji:🦊")]
    merged = merge_polled_players("emoji_1", local, fetched)
    assert merged["a"].last_answer == "emoji:🐶"
    assert merged["b"].last_answer == "emoji:🦊"


def test_spectator_host_sits_out_only_with_enough_players():
    players = [_player("h", is_host=True), _player("b"), _player("c"), _player("d")]
    settings = {"spectatorEnabled": True}
    assert sorted(round_participants(players, settings, {"h", "b", "c", "d"}, "h")) == ["b", "c", "d"]
    assert sorted(round_participants(players[:3], settings, {"h", "b", "c"}, "h")) == ["b", "c", "h"]
    assert sorted(round_participants(players, {}, {"b"}, "h")) == ["b", "h"]


def test_plan_back_to_lobby_resets_round():
    players = {"h": _player("h", is_host=True), "b": _player("b", score=3)}
    settings = {"player_order": ["h", "b"], "chains": {"x": {}}, "history": {"text": {}}, "assignments": {"text": {}}}
    plan = plan_transition("winner", "lobby", settings, players, {"h", "b"}, {}, my_player_id="h", now=0)
    assert plan.status == "lobby"
    assert plan.reset_players
    assert plan.settings["player_order"] == []
    assert plan.settings["chains"] == {}
    assert plan.phase_expiry is None


def test_plan_vote_to_scoreboard_tallies():
    players = {"h": _player("h", is_host=True), "b": _player("b", score=1)}
    answers = {"h": "vote:mostAccurate:b", "b": ""}
    plan = plan_transition(
        "vote", "scoreboard", {"player_order": ["h", "b"]}, players, {"h", "b"}, answers, my_player_id="h", now=0
    )
    assert plan.score_updates["b"].score == 3
    assert plan.settings["history"]["vote"] == answers


@pytest.mark.asyncio
async def test_transition_gate_is_exclusive_until_released():
    gate = TransitionGate(settle_ms=0)
    assert await gate.try_acquire()
    assert not await gate.try_acquire()
    gate.release_later()
    assert await gate.try_acquire()
    gate.reset()
    assert not gate.locked


@pytest.mark.asyncio
async def test_full_round_reaches_reveal_with_fresh_chains(trio, store, settle):
    host, bob, carol = trio
    assert await host.start_game()
    await settle()
    assert bob.phase == "text"
    assert store.rooms[host.room_id].status == "playing"

    answers = {
        "text": ("A cat", "A dog", "A fox"),
        "emoji_1": ("🐱", "🐶", "🦊"),
        "interpretation_1": ("cat", "dog", "fox"),
    }
    for phase, values in answers.items():
        assert host.phase == phase
        for session, value in zip((host, bob, carol), values):
            assert await session.submit_answer(value)
        await settle()
        assert await host.run_host_monitor()
        await settle()

    assert host.phase == "reveal"
    assert carol.phase == "reveal"
    settings = store.rooms[host.room_id].settings
    assert len(settings["chains"]) == 3
    for chain in settings["chains"].values():
        contributors = [entry["playerId"] for entry in chain["history"]]
        assert len(contributors) == 3
        assert len(set(contributors)) == 3
        assert contributors[0] == chain["creator_id"]


@pytest.mark.asyncio
async def test_reveal_vote_and_scoreboard(trio, store, settle):
    host, bob, carol = trio
    assert await host.start_game({"scoreToWin": 10})
    await settle()
    assert await host.advance_phase("reveal", skip_grace=True)
    await settle()

    for _ in range(30):
        if host.phase != "reveal":
            break
        assert await host.advance_reveal()
        await settle()
    assert host.phase == "vote"

    await settle()
    assert not await bob.submit_votes([{"category": "funniest", "targetId": bob.my_player_id}])
    assert await bob.submit_votes(
        [
            {"category": "funniest", "targetId": carol.my_player_id},
            {"category": "mostAccurate", "targetId": carol.my_player_id},
        ]
    )
    await settle()
    assert await host.advance_phase("scoreboard")
    await settle()

    assert store.players[carol.my_player_id].score == 3
    assert store.players[bob.my_player_id].votes_used == {"funniest": 1, "mostAccurate": 1}

    assert await host.continue_after_scoreboard()
    await settle()
    assert host.phase == "text"
    assert bob.phase == "text"


@pytest.mark.asyncio
async def test_vote_budget_is_enforced(trio, settle):
    host, bob, carol = trio
    assert await host.start_game()
    await settle()
    assert await host.advance_phase("reveal", skip_grace=True)
    await settle()
    assert await host.advance_phase("vote")
    await settle()
    too_many = [{"category": "mostAccurate", "targetId": carol.my_player_id}] * 2
    assert not await bob.submit_votes(too_many)


@pytest.mark.asyncio
async def test_only_host_can_drive_phases(trio, settle):
    host, bob, _ = trio
    assert not await bob.start_game()
    assert await host.start_game()
    await settle()
    assert not await bob.advance_phase("emoji_1")
    assert not await host.advance_phase("text")


@pytest.mark.asyncio
async def test_backward_transitions_are_blocked(trio, settle):
    host, _, _ = trio
    assert await host.start_game()
    await settle()
    assert await host.advance_phase("emoji_1", skip_grace=True)
    await settle()
    assert not await host.advance_phase("text")
    assert host.phase == "emoji_1"


@pytest.mark.asyncio
async def test_vote_cannot_jump_to_next_round(trio, store, settle):
    host, _, _ = trio
    assert await host.start_game()
    await settle()
    assert await host.advance_phase("reveal", skip_grace=True)
    await settle()
    assert not await host.advance_phase("text")
    assert await host.advance_phase("vote")
    await settle()

    assert not await host.advance_phase("text")
    assert host.phase == "vote"
    assert store.game_states[host.room_id].phase == "vote"


@pytest.mark.asyncio
async def test_advance_skips_when_store_already_moved(trio, store, settle):
    host, _, _ = trio
    assert await host.start_game()
    await settle()
    state = store.game_states[host.room_id]
    state.phase = "emoji_1"
    state.revision += 1

    assert not await host.advance_phase("emoji_1", skip_grace=True)
    assert host.phase == "emoji_1"


@pytest.mark.asyncio
async def test_conditional_write_conflict_rolls_back(trio, store, settle, monkeypatch):
    host, _, _ = trio
    assert await host.start_game()
    await settle()

    async def lost_race(room_id, **fields):
        return None

    monkeypatch.setattr(store, "update_game_state", lost_race)
    assert not await host.advance_phase("emoji_1", skip_grace=True)
    assert host.phase == "text"
    monkeypatch.undo()
    await settle()
    assert store.game_states[host.room_id].phase == "text"


@pytest.mark.asyncio
async def test_losing_advance_leaves_rival_round_untouched(trio, store, settle, monkeypatch):
    host, bob, _ = trio
    assert await host.start_game()
    await settle()
    room_id = host.room_id
    real_get_room = store.get_room

    async def rival_commits_first(target_id):
        # Another host wins text -> emoji_1 between the pre-check and our writes.
        settings = dict(store.rooms[target_id].settings)
        settings["assignments"] = dict(settings.get("assignments") or {}, emoji_1={"rival": "marker"})
        await store.update_room(target_id, settings=settings)
        await store.update_game_state(target_id, phase="emoji_1", phase_expiry=None, expected_phase="text")
        await store.update_player(bob.my_player_id, last_answer="emoji:🐶")
        return await real_get_room(target_id)

    monkeypatch.setattr(store, "get_room", rival_commits_first)
    assert not await host.advance_phase("emoji_1", skip_grace=True)
    monkeypatch.undo()
    await settle()

    assert store.game_states[room_id].phase == "emoji_1"
    assert store.players[bob.my_player_id].last_answer == "emoji:🐶"
    assert store.rooms[room_id].settings["assignments"]["emoji_1"] == {"rival": "marker"}


@pytest.mark.asyncio
async def test_collapse_waits_for_grace_then_goes_to_scoreboard(trio, settle):
    host, bob, carol = trio
    assert await host.start_game()
    await settle()
    await bob.close()
    await carol.close()
    await settle()

    now = 1_000_000
    assert not await host.run_host_monitor(now)
    assert "collapse" in host.notifications
    assert not await host.run_host_monitor(now + host.timings.collapse_grace_ms - 1)
    assert await host.run_host_monitor(now + host.timings.collapse_grace_ms)
    assert host.phase == "scoreboard"


@pytest.mark.asyncio
async def test_start_needs_two_participants(make_session):
    host = make_session()
    assert await host.create_room("Solo", "🐼")
    assert not await host.start_game()
    assert host.phase == "lobby"
