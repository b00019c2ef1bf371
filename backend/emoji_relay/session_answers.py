from __future__ import annotations

import json
import logging
from typing import Any, Iterable

from pydantic import BaseModel, Field, ValidationError

from .session_constants import (
    DEFAULT_SCORE_TO_WIN,
    DRAFT_EMOJI_PREFIX,
    DRAFT_GUESS_PREFIX,
    DRAFT_PREFIXES,
    DRAFT_TEXT_PREFIX,
    DRAFT_VOTE_PREFIX,
    EMOJI_PREFIX,
    FINAL_PREFIXES,
    GUESS_PREFIX,
    PLACEHOLDERS,
    TEXT_PREFIX,
    VOTE_BUDGET_STEP,
    VOTE_BUDGET_UNITS,
    VOTE_CATEGORIES,
    VOTE_MULTI_PREFIX,
    VOTE_PREFIX,
)
from .session_types import VoteCategory

logger = logging.getLogger(__name__)


class VoteEntry(BaseModel):
    category: VoteCategory
    targetId: str = Field(min_length=1)


def phase_family(phase: str | None) -> str | None:
    value = str(phase or "")
    if value == "text":
        return "text"
    if value.startswith("emoji"):
        return "emoji"
    if value.startswith("interpretation"):
        return "interpretation"
    if value == "vote":
        return "vote"
    return None


_FINALS_BY_FAMILY: dict[str, tuple[str, ...]] = {
    "text": (TEXT_PREFIX,),
    "emoji": (EMOJI_PREFIX,),
    "interpretation": (GUESS_PREFIX,),
    "vote": (VOTE_MULTI_PREFIX, VOTE_PREFIX),
}
_DRAFTS_BY_FAMILY: dict[str, str] = {
    "text": DRAFT_TEXT_PREFIX,
    "emoji": DRAFT_EMOJI_PREFIX,
    "interpretation": DRAFT_GUESS_PREFIX,
    "vote": DRAFT_VOTE_PREFIX,
}


def final_prefixes_for_phase(phase: str | None) -> tuple[str, ...]:
    family = phase_family(phase)
    if family is None:
        return ()
    return _FINALS_BY_FAMILY[family]


def final_prefix_for_phase(phase: str | None) -> str | None:
    prefixes = final_prefixes_for_phase(phase)
    return prefixes[0] if prefixes else None


def draft_prefix_for_phase(phase: str | None) -> str | None:
    family = phase_family(phase)
    if family is None:
        return None
    return _DRAFTS_BY_FAMILY[family]


def known_prefix(raw: str | None) -> str:
    value = str(raw or "")
    for prefix in DRAFT_PREFIXES + FINAL_PREFIXES:
        if value.startswith(prefix):
            return prefix
    return ""


def answer_payload(raw: str | None) -> str:
    value = str(raw or "")
    prefix = known_prefix(value)
    return value[len(prefix) :]


def is_final_for_phase(raw: str | None, phase: str | None) -> bool:
    value = str(raw or "")
    return any(value.startswith(prefix) for prefix in final_prefixes_for_phase(phase))


def is_draft_for_phase(raw: str | None, phase: str | None) -> bool:
    prefix = draft_prefix_for_phase(phase)
    return bool(prefix) and str(raw or "").startswith(prefix)


def is_submission_for_phase(raw: str | None, phase: str | None) -> bool:
    return is_final_for_phase(raw, phase) or is_draft_for_phase(raw, phase)


def with_final_prefix(phase: str | None, answer: str) -> str:
    value = str(answer or "")
    if any(value.startswith(prefix) for prefix in FINAL_PREFIXES):
        return value
    prefix = final_prefix_for_phase(phase)
    if prefix is None:
        return value
    return f"{prefix}{value}"


def answer_rank(raw: str | None, phase: str | None) -> int:
    """-1 wrong phase, 0 empty, 1 draft, 2 final."""
    value = str(raw or "")
    if not value.strip():
        return 0
    prefix = known_prefix(value)
    if not prefix:
        return 1
    if phase_family(phase) is not None and not is_submission_for_phase(value, phase):
        return -1
    if prefix in DRAFT_PREFIXES:
        return 1
    return 2


def merge_answers(local: str | None, remote: str | None, phase: str | None) -> str | None:
    local_rank = answer_rank(local, phase)
    remote_rank = answer_rank(remote, phase)
    if local_rank > remote_rank:
        return local
    if local_rank == remote_rank and len(str(local or "")) > len(str(remote or "")):
        return local
    return remote


def placeholder_for(phase: str | None, online: bool) -> str:
    family = phase_family(phase)
    if family is None or family not in PLACEHOLDERS:
        return ""
    present_text, absent_text = PLACEHOLDERS[family]
    return present_text if online else absent_text


def encode_votes(entries: Iterable[VoteEntry | dict[str, Any]]) -> str:
    payload = []
    for entry in entries:
        item = entry if isinstance(entry, VoteEntry) else VoteEntry.model_validate(entry)
        payload.append(item.model_dump())
    return VOTE_MULTI_PREFIX + json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def decode_votes(raw: str | None) -> list[VoteEntry]:
    value = str(raw or "")
    if value.startswith(VOTE_MULTI_PREFIX):
        try:
            items = json.loads(value[len(VOTE_MULTI_PREFIX) :])
        except ValueError:
            logger.warning("Failed to parse multi-vote payload")
            return []
        if not isinstance(items, list):
            return []
        entries: list[VoteEntry] = []
        for item in items:
            try:
                entries.append(VoteEntry.model_validate(item))
            except ValidationError:
                continue
        return entries

    if value.startswith(VOTE_PREFIX):
        category, _, target_id = value[len(VOTE_PREFIX) :].partition(":")
        if category in VOTE_CATEGORIES and target_id:
            return [VoteEntry(category=category, targetId=target_id)]
    return []


def vote_budget(score_to_win: Any = DEFAULT_SCORE_TO_WIN) -> dict[str, int]:
    try:
        target = int(score_to_win or DEFAULT_SCORE_TO_WIN)
    except (TypeError, ValueError):
        target = DEFAULT_SCORE_TO_WIN
    multiplier = max(1, target // VOTE_BUDGET_STEP)
    return {category: units * multiplier for category, units in VOTE_BUDGET_UNITS.items()}


def remaining_votes(
    score_to_win: Any,
    votes_used: dict[str, int] | None,
    pending: Iterable[VoteEntry] = (),
) -> dict[str, int]:
    remaining = vote_budget(score_to_win)
    used = votes_used or {}
    for category in remaining:
        remaining[category] -= int(used.get(category, 0) or 0)
    for entry in pending:
        remaining[entry.category] -= 1
    return remaining
