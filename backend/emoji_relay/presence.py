from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable

from .session_types import PresenceEvent, PresenceEventKind, PresenceMeta

logger = logging.getLogger(__name__)


class PresenceChannel(ABC):
    """Ephemeral membership for one topic, seen from one client."""

    def __init__(self, topic: str, player_id: str) -> None:
        self.topic = topic
        self.player_id = player_id

    @abstractmethod
    async def track(self, meta: PresenceMeta) -> None: ...

    @abstractmethod
    async def untrack(self) -> None: ...

    @abstractmethod
    def members(self) -> dict[str, PresenceMeta]: ...

    @abstractmethod
    def events(self) -> AsyncIterator[PresenceEvent]: ...

    async def close(self) -> None:
        await self.untrack()


PresenceFactory = Callable[[str, str], PresenceChannel]


def presence_topic(room_id: str) -> str:
    return f"room:{room_id}"


class InMemoryPresenceHub:
    def __init__(self) -> None:
        self._topics: dict[str, dict["InMemoryPresenceChannel", PresenceMeta | None]] = {}

    def channel(self, topic: str, player_id: str) -> "InMemoryPresenceChannel":
        channel = InMemoryPresenceChannel(self, topic, player_id)
        self._topics.setdefault(topic, {})[channel] = None
        return channel

    def members(self, topic: str) -> dict[str, PresenceMeta]:
        merged: dict[str, PresenceMeta] = {}
        for meta in self._topics.get(topic, {}).values():
            if meta is not None:
                merged[meta.player_id] = meta
        return merged

    def _set(self, channel: "InMemoryPresenceChannel", meta: PresenceMeta | None) -> None:
        before = self.members(channel.topic)
        channels = self._topics.setdefault(channel.topic, {})
        if meta is None and channel.closed:
            channels.pop(channel, None)
        else:
            channels[channel] = meta
        after = self.members(channel.topic)
        joined = tuple(pid for pid in after if pid not in before)
        left = tuple(pid for pid in before if pid not in after)
        if joined:
            self._broadcast(channel.topic, "join", joined)
        if left:
            self._broadcast(channel.topic, "leave", left)
        if not joined and not left and before != after:
            self._broadcast(channel.topic, "sync", tuple(pid for pid in after if before.get(pid) != after[pid]))

    def _broadcast(self, topic: str, kind: PresenceEventKind, changed: tuple[str, ...]) -> None:
        event = PresenceEvent(kind=kind, members=self.members(topic), changed=changed)
        for channel in list(self._topics.get(topic, {})):
            channel._deliver(event)

    def disconnect(self, topic: str, player_id: str) -> None:
        """Drops every channel tracking player_id, as a network loss would."""
        for channel in list(self._topics.get(topic, {})):
            if channel.player_id == player_id:
                channel.closed = True
                self._set(channel, None)
                channel._deliver(None)


class InMemoryPresenceChannel(PresenceChannel):
    def __init__(self, hub: InMemoryPresenceHub, topic: str, player_id: str) -> None:
        super().__init__(topic, player_id)
        self._hub = hub
        self._queue: asyncio.Queue[PresenceEvent | None] = asyncio.Queue()
        self.closed = False

    def _deliver(self, event: PresenceEvent | None) -> None:
        if event is None or not self.closed:
            self._queue.put_nowait(event)

    async def track(self, meta: PresenceMeta) -> None:
        if self.closed:
            return
        self._hub._set(self, meta)
        self._deliver(PresenceEvent(kind="sync", members=self.members()))

    async def untrack(self) -> None:
        self._hub._set(self, None)

    def members(self) -> dict[str, PresenceMeta]:
        return self._hub.members(self.topic)

    async def events(self) -> AsyncIterator[PresenceEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._hub._set(self, None)
        self._deliver(None)
