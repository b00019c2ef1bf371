from __future__ import annotations

import hashlib
import json
import logging
import random
import re
import time
import uuid
from typing import Any, Iterable, TypeVar

from .session_constants import (
    DEFAULT_AVATAR,
    DEFAULT_PLAYER_NAME,
    MAX_PLAYER_NAME_LENGTH,
    ROOM_CODE_CHARS,
    ROOM_CODE_LENGTH,
)

T = TypeVar("T")


def now_ms() -> int:
    return int(time.time() * 1000)


def random_id() -> str:
    return str(uuid.uuid4())


def random_room_code(length: int = ROOM_CODE_LENGTH) -> str:
    return "".join(random.choice(ROOM_CODE_CHARS) for _ in range(max(4, length)))


def sanitize_room_code(raw: str | None) -> str:
    value = (raw or "").upper()
    filtered = "".join(ch for ch in value if ch in ROOM_CODE_CHARS)
    return filtered[:8]


def shuffle(items: Iterable[T]) -> list[T]:
    copy = list(items)
    random.shuffle(copy)
    return copy


def encode_avatar(emoji: str | None, fingerprint: str | None) -> str:
    display = str(emoji or "").split("|", 1)[0].strip() or DEFAULT_AVATAR
    if not fingerprint:
        return display
    return f"{display}|{fingerprint}"


def normalize_player_name(name: str | None) -> str:
    return str(name or "").strip().lower()


def sanitize_player_name(raw: str | None) -> str:
    value = str(raw or "").strip()
    if not value:
        return DEFAULT_PLAYER_NAME
    cleaned = re.sub(r"\s+", " ", value)[:MAX_PLAYER_NAME_LENGTH].strip()
    return cleaned or DEFAULT_PLAYER_NAME


def make_unique_player_name(requested: str | None, taken: Iterable[str]) -> str:
    base = sanitize_player_name(requested)
    used = {normalize_player_name(name) for name in taken}
    if normalize_player_name(base) not in used:
        return base

    for index in range(2, 1000):
        suffix = f" ({index})"
        limit = max(1, MAX_PLAYER_NAME_LENGTH - len(suffix))
        candidate = f"{base[:limit].rstrip()}{suffix}"
        if normalize_player_name(candidate) not in used:
            return candidate
    return f"{base[:16].rstrip()} ({random.randint(1000, 9999)})"


def identity_for_logs(identity: str | None) -> str:
    if not identity:
        return "none"
    return hashlib.sha256(identity.encode("utf-8")).hexdigest()[:10]


def log_session_event(
    logger: logging.Logger,
    event: str,
    level: int = logging.INFO,
    **fields: Any,
) -> None:
    logger.log(
        level,
        "session.%s %s",
        event,
        json.dumps(fields, ensure_ascii=False, separators=(",", ":"), default=str),
    )
