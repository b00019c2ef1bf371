from __future__ import annotations

import asyncio
import dataclasses
import uuid

import pytest

from emoji_relay.config import SessionTimings
from emoji_relay.memory_store import InMemoryRecordStore
from emoji_relay.presence import InMemoryPresenceHub
from emoji_relay.session import RoomSession
from emoji_relay.session_reconnect import SessionTokenStore

FAST_TIMINGS = SessionTimings(
    transition_settle_ms=0,
    laggard_wait_ms=60,
    laggard_poll_ms=10,
    feed_retry_ms=20,
    submission_retry_ms=10,
    notification_quiet_ms=0,
)


@pytest.fixture()
def store():
    return InMemoryRecordStore()


@pytest.fixture()
def hub():
    return InMemoryPresenceHub()


@pytest.fixture()
def settle():
    async def _settle(delay: float = 0.02) -> None:
        # Lets feed and presence consumers drain their queues.
        for _ in range(3):
            await asyncio.sleep(delay / 3)

    return _settle


@pytest.fixture()
async def make_session(store, hub):
    sessions: list[RoomSession] = []

    def factory(fingerprint=None, tokens=None, presence_factory=None, **timing_overrides):
        timings = dataclasses.replace(FAST_TIMINGS, **timing_overrides) if timing_overrides else FAST_TIMINGS
        session = RoomSession(
            store,
            presence_factory or hub.channel,
            fingerprint=fingerprint or f"fp-{uuid.uuid4().hex[:8]}",
            tokens=tokens if tokens is not None else SessionTokenStore(),
            timings=timings,
            autostart_tasks=False,
        )
        sessions.append(session)
        return session

    yield factory

    for session in sessions:
        await session.close()


@pytest.fixture()
async def trio(make_session, settle):
    """A lobby with a host and two guests, all online."""
    host = make_session()
    code = await host.create_room("Alice", "🐱")
    bob = make_session()
    carol = make_session()
    assert await bob.join_room(code, "Bob", "🐶")
    assert await carol.join_room(code, "Carol", "🦊")
    await settle()
    return host, bob, carol


class _FakePubSub:
    def __init__(self, server: "FakeRedis") -> None:
        self._server = server
        self._queue: asyncio.Queue[dict] = asyncio.Queue()
        self.channels: set[str] = set()

    async def subscribe(self, *channels: str) -> None:
        self.channels.update(channels)
        self._server.subscribers.add(self)

    async def listen(self):
        while True:
            yield await self._queue.get()

    async def aclose(self) -> None:
        self._server.subscribers.discard(self)


class FakeRedis:
    """Just the hash and pub/sub calls the presence channel makes."""

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.subscribers: set[_FakePubSub] = set()

    async def ping(self) -> bool:
        return True

    async def hset(self, key: str, field: str, value: str) -> int:
        self.hashes.setdefault(key, {})[field] = value
        return 1

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self.hashes.get(key, {}))

    async def hdel(self, key: str, *fields: str) -> int:
        bucket = self.hashes.get(key, {})
        return sum(1 for field in fields if bucket.pop(field, None) is not None)

    async def pexpire(self, key: str, ms: int) -> bool:
        return key in self.hashes

    async def publish(self, channel: str, data: str) -> int:
        receivers = [sub for sub in self.subscribers if channel in sub.channels]
        for sub in receivers:
            sub._queue.put_nowait({"type": "message", "channel": channel, "data": data})
        return len(receivers)

    def pubsub(self) -> _FakePubSub:
        return _FakePubSub(self)


@pytest.fixture()
def fake_redis():
    return FakeRedis()
