from __future__ import annotations

import asyncio
import json

import pytest

from emoji_relay.redis_presence import RedisPresenceChannel, redis_presence_factory
from emoji_relay.session_types import PresenceMeta


TOPIC = "room:r1"
KEY = f"er:presence:{TOPIC}"


async def _collect(channel, seen):
    async for event in channel.events():
        seen.append((event.kind, event.changed))


@pytest.mark.asyncio
async def test_join_away_and_leave_are_announced(fake_redis, settle):
    factory = redis_presence_factory(fake_redis, ttl_seconds=30)
    alice = factory(TOPIC, "a")
    bob = factory(TOPIC, "b")
    assert isinstance(alice, RedisPresenceChannel)
    seen = []
    consumer = asyncio.create_task(_collect(alice, seen))
    try:
        await alice.track(PresenceMeta(player_id="a", online_at=1))
        await settle()
        await bob.track(PresenceMeta(player_id="b", online_at=2))
        await settle()
        assert set(alice.members()) == {"a", "b"}
        assert set(bob.members()) == {"a", "b"}

        await bob.track(PresenceMeta(player_id="b", is_away=True, online_at=2))
        await settle()
        assert alice.members()["b"].is_away

        await bob.close()
        await settle()
        assert set(alice.members()) == {"a"}
        assert "b" not in fake_redis.hashes[KEY]
    finally:
        await alice.close()
        await bob.close()
    await asyncio.wait_for(consumer, timeout=1)

    assert ("join", ("b",)) in seen
    assert ("sync", ("b",)) in seen
    assert ("leave", ("b",)) in seen


@pytest.mark.asyncio
async def test_expired_members_are_dropped(fake_redis, settle):
    fake_redis.hashes[KEY] = {
        "ghost": json.dumps({"playerId": "ghost", "expiresAt": 1}),
        "junk": "{not json",
    }
    channel = RedisPresenceChannel(fake_redis, TOPIC, "a", ttl_seconds=30)
    try:
        await channel.track(PresenceMeta(player_id="a"))
        assert set(channel.members()) == {"a"}
        assert set(fake_redis.hashes[KEY]) == {"a"}
    finally:
        await channel.close()


@pytest.mark.asyncio
async def test_sessions_see_each_other_over_redis_presence(make_session, fake_redis, settle):
    factory = redis_presence_factory(fake_redis, ttl_seconds=30)
    host = make_session(presence_factory=factory)
    guest = make_session(presence_factory=factory)
    code = await host.create_room("Alice", "🐱")
    await settle()
    assert await guest.join_room(code, "Bob", "🐶")
    await settle()
    assert host.snapshot().online_ids() == {host.my_player_id, guest.my_player_id}
    assert guest.snapshot().is_online(host.my_player_id)
