from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable

from .session_types import ChangeEvent, GameStateRecord, Phase, PlayerRecord, RoomRecord, RoomStatus

logger = logging.getLogger(__name__)

PLAYER_FIELDS = frozenset(
    {"name", "avatar", "is_host", "score", "votes_used", "last_answer", "last_seen"}
)


class ChangeFeed:
    """Per-room subscription. At-least-once, unordered across tables."""

    def __init__(self, room_id: str, on_close: Callable[["ChangeFeed"], None] | None = None) -> None:
        self.room_id = room_id
        self._queue: asyncio.Queue[ChangeEvent | None] = asyncio.Queue()
        self._on_close = on_close
        self.closed = False

    def publish(self, event: ChangeEvent) -> None:
        if self.closed or event.room_id != self.room_id:
            return
        self._queue.put_nowait(event)

    def fail(self) -> None:
        """Ends iteration with an error so the consumer re-subscribes."""
        if not self.closed:
            self._queue.put_nowait(None)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(None)
        if self._on_close is not None:
            self._on_close(self)

    def __aiter__(self) -> "ChangeFeed":
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self._queue.get()
        if event is None:
            if self.closed:
                raise StopAsyncIteration
            raise ConnectionError(f"change feed for room {self.room_id} dropped")
        return event


class RecordStore(ABC):
    """Shared mutable store for rooms, players and game state.

    Every update bumps the record's revision and returns the new row.
    """

    def __init__(self) -> None:
        self._feeds: set[ChangeFeed] = set()

    def subscribe(self, room_id: str) -> ChangeFeed:
        feed = ChangeFeed(room_id, on_close=self._feeds.discard)
        self._feeds.add(feed)
        return feed

    def _fan_out(self, event: ChangeEvent) -> None:
        for feed in list(self._feeds):
            feed.publish(event)

    @abstractmethod
    async def create_room(
        self,
        room_code: str,
        settings: dict[str, Any],
        status: RoomStatus = "lobby",
    ) -> RoomRecord: ...

    @abstractmethod
    async def get_room(self, room_id: str) -> RoomRecord | None: ...

    @abstractmethod
    async def find_rooms_by_code(self, room_code: str) -> list[RoomRecord]: ...

    @abstractmethod
    async def update_room(
        self,
        room_id: str,
        *,
        settings: dict[str, Any] | None = None,
        status: RoomStatus | None = None,
    ) -> RoomRecord | None: ...

    @abstractmethod
    async def delete_room(self, room_id: str) -> None: ...

    @abstractmethod
    async def create_player(
        self,
        room_id: str,
        *,
        name: str,
        avatar: str,
        is_host: bool = False,
        last_seen: int = 0,
    ) -> PlayerRecord: ...

    @abstractmethod
    async def get_player(self, player_id: str) -> PlayerRecord | None: ...

    @abstractmethod
    async def list_players(self, room_id: str) -> list[PlayerRecord]: ...

    @abstractmethod
    async def update_player(self, player_id: str, **fields: Any) -> PlayerRecord | None: ...

    @abstractmethod
    async def update_players(
        self,
        room_id: str,
        player_ids: Iterable[str] | None = None,
        **fields: Any,
    ) -> list[PlayerRecord]: ...

    @abstractmethod
    async def delete_player(self, player_id: str) -> None: ...

    @abstractmethod
    async def create_game_state(self, room_id: str, phase: Phase = "lobby") -> GameStateRecord: ...

    @abstractmethod
    async def get_game_state(self, room_id: str) -> GameStateRecord | None: ...

    @abstractmethod
    async def update_game_state(
        self,
        room_id: str,
        *,
        phase: Phase,
        phase_expiry: int | None,
        timer: int = 0,
        expected_phase: Phase | None = None,
    ) -> GameStateRecord | None:
        """Returns None when the row is missing or expected_phase no longer matches."""

    async def count_players(self, room_id: str) -> int:
        return len(await self.list_players(room_id))

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        for feed in list(self._feeds):
            feed.close()


def check_player_fields(fields: dict[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - PLAYER_FIELDS
    if unknown:
        raise ValueError(f"Unknown player fields: {', '.join(sorted(unknown))}")
    return fields
