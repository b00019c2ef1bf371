from __future__ import annotations

import json

import pytest

from emoji_relay.session_answers import (
    VoteEntry,
    answer_rank,
    decode_votes,
    encode_votes,
    is_draft_for_phase,
    is_final_for_phase,
    merge_answers,
    placeholder_for,
    remaining_votes,
    vote_budget,
    with_final_prefix,
)


@pytest.mark.parametrize(
    ("phase", "answer", "expected"),
    [
        ("text", "a cat on a bike", "text:a cat on a bike"),
        ("emoji_1", "🐱🚲", "emoji:🐱🚲"),
        ("interpretation_2", "cat cycling", "guess:cat cycling"),
        ("emoji_3", "emoji:🐱", "emoji:🐱"),
        ("lobby", "hello", "hello"),
    ],
)
def test_with_final_prefix(phase, answer, expected):
    assert with_final_prefix(phase, answer) == expected


def test_final_and_draft_detection_is_phase_aware():
    assert is_final_for_phase("emoji:🐱", "emoji_2")
    assert not is_final_for_phase("emoji:🐱", "interpretation_1")
    assert is_draft_for_phase("draft_guess:a cat", "interpretation_1")
    assert not is_draft_for_phase("draft:a cat", "emoji_1")
    assert is_final_for_phase("vote_multi:[]", "vote")
    assert is_final_for_phase("vote:funniest:p1", "vote")


def test_answer_rank_orders_empty_draft_final():
    assert answer_rank(None, "text") == 0
    assert answer_rank("   ", "text") == 0
    assert answer_rank("draft:half", "text") == 1
    assert answer_rank("bare text", "text") == 1
    assert answer_rank("text:done", "text") == 2
    assert answer_rank("emoji:🐱", "text") == -1


def test_merge_prefers_final_over_draft():
    assert merge_answers("draft:half", "text:done", "text") == "text:done"
    assert merge_answers("text:done", "draft:half", "text") == "text:done"
    assert merge_answers("text:done", None, "text") == "text:done"


def test_merge_breaks_rank_ties_by_length():
    assert merge_answers("draft:longer draft", "draft:short", "text") == "draft:longer draft"
    assert merge_answers("draft:short", "draft:longer draft", "text") == "draft:longer draft"


def test_merge_drops_answers_from_other_phases():
    assert merge_answers("emoji:🐱", None, "interpretation_1") is None


def test_placeholders_depend_on_presence():
    online = placeholder_for("text", True)
    offline = placeholder_for("text", False)
    assert online and offline and online != offline
    assert placeholder_for("emoji_4", False) == "👻❌❓"
    assert placeholder_for("vote", True) == ""


def test_votes_roundtrip_through_multi_encoding():
    encoded = encode_votes(
        [
            {"category": "funniest", "targetId": "p2"},
            VoteEntry(category="mostAccurate", targetId="p3"),
        ]
    )
    assert encoded.startswith("vote_multi:")
    decoded = decode_votes(encoded)
    assert [(entry.category, entry.targetId) for entry in decoded] == [
        ("funniest", "p2"),
        ("mostAccurate", "p3"),
    ]


def test_decode_votes_skips_invalid_entries_and_reads_legacy():
    raw = "vote_multi:" + json.dumps(
        [
            {"category": "funniest", "targetId": "p2"},
            {"category": "bogus", "targetId": "p3"},
            {"category": "mostDestroyed"},
        ]
    )
    assert [entry.targetId for entry in decode_votes(raw)] == ["p2"]
    legacy = decode_votes("vote:mostDestroyed:p9")
    assert legacy[0].category == "mostDestroyed"
    assert decode_votes("vote_multi:{not json") == []
    assert decode_votes(None) == []


def test_vote_budget_scales_with_score_target():
    assert vote_budget(5) == {"funniest": 3, "mostAccurate": 1, "mostDestroyed": 1}
    assert vote_budget(10) == {"funniest": 6, "mostAccurate": 2, "mostDestroyed": 2}
    assert vote_budget(3) == vote_budget(5)
    assert vote_budget("junk") == vote_budget(5)


def test_remaining_votes_counts_used_and_pending():
    pending = [VoteEntry(category="mostAccurate", targetId="p2")]
    remaining = remaining_votes(5, {"funniest": 2, "mostAccurate": 1}, pending)
    assert remaining == {"funniest": 1, "mostAccurate": -1, "mostDestroyed": 1}
