from __future__ import annotations

from emoji_relay.session_answers import encode_votes
from emoji_relay.session_scoring import tally_votes
from emoji_relay.session_types import PlayerRecord


def _players(**scores):
    return {
        player_id: PlayerRecord(id=player_id, room_id="r1", name=player_id, score=score)
        for player_id, score in scores.items()
    }


def test_tally_applies_category_points():
    players = _players(a=0, b=1, c=0)
    answers = {
        "a": encode_votes([{"category": "funniest", "targetId": "b"}, {"category": "mostAccurate", "targetId": "c"}]),
        "b": encode_votes([{"category": "mostAccurate", "targetId": "c"}]),
        "c": "",
    }
    updates = tally_votes(answers, players)
    assert updates["b"].score == 2
    assert updates["c"].score == 4
    assert updates["a"].score == 0
    assert updates["a"].votes_used == {"funniest": 1, "mostAccurate": 1}
    assert updates["b"].votes_used == {"mostAccurate": 1}
    assert "c" not in updates or updates["c"].votes_used == {}


def test_scores_never_go_negative():
    players = _players(a=0, b=0)
    answers = {"a": "vote:mostDestroyed:b"}
    updates = tally_votes(answers, players)
    assert updates["b"].score == 0


def test_votes_used_accumulates_across_rounds():
    players = _players(a=0, b=0)
    players["a"].votes_used = {"funniest": 2}
    updates = tally_votes({"a": "vote:funniest:b"}, players)
    assert updates["a"].votes_used == {"funniest": 3}


def test_votes_for_departed_players_are_ignored():
    players = _players(a=3)
    updates = tally_votes({"a": "vote:funniest:gone"}, players)
    assert set(updates) == {"a"}
    assert updates["a"].score == 3
