from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Mapping

from .session_answers import decode_votes
from .session_constants import VOTE_POINTS
from .session_types import PlayerRecord


@dataclass(frozen=True)
class ScoreUpdate:
    player_id: str
    score: int
    votes_used: dict[str, int] = field(default_factory=dict)


def tally_votes(
    answers: Mapping[str, str | None],
    players: Mapping[str, PlayerRecord],
) -> dict[str, ScoreUpdate]:
    score_delta: dict[str, int] = defaultdict(int)
    usage_delta: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
    for voter_id, raw in answers.items():
        for entry in decode_votes(raw):
            score_delta[entry.targetId] += VOTE_POINTS[entry.category]
            usage_delta[voter_id][entry.category] += 1

    updates: dict[str, ScoreUpdate] = {}
    for player_id, player in players.items():
        delta = score_delta.get(player_id, 0)
        usage = usage_delta.get(player_id, {})
        if not delta and not usage:
            continue
        votes_used = dict(player.votes_used or {})
        for category, count in usage.items():
            votes_used[category] = int(votes_used.get(category, 0) or 0) + count
        updates[player_id] = ScoreUpdate(
            player_id=player_id,
            score=max(0, int(player.score or 0) + delta),
            votes_used=votes_used,
        )
    return updates
