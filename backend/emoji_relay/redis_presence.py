from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator

from redis.asyncio import Redis
from redis.asyncio import from_url as redis_from_url

from .config import settings
from .presence import PresenceChannel, PresenceFactory
from .session_types import PresenceEvent, PresenceEventKind, PresenceMeta
from .session_utils import now_ms

logger = logging.getLogger(__name__)

_redis: Redis | None = None


def is_redis_configured() -> bool:
    return bool(settings.redis_url)


def get_redis() -> Redis | None:
    return _redis


async def init_redis() -> bool:
    global _redis
    if _redis is not None:
        return True

    if not settings.redis_url:
        logger.info("Redis URL is not configured, presence disabled")
        return False

    client = redis_from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    try:
        await client.ping()
    except Exception:
        logger.exception("Failed to connect to Redis %s", settings.redis_url)
        await client.aclose()
        return False

    _redis = client
    logger.info("Redis presence connected")
    return True


async def close_redis() -> None:
    global _redis
    if _redis is None:
        return
    try:
        await _redis.aclose()
    finally:
        _redis = None


async def ping_redis(client: Redis | None = None) -> bool:
    target = client or _redis
    if target is None:
        return False
    try:
        await target.ping()
        return True
    except Exception:
        logger.exception("Redis ping failed")
        return False


def _presence_key(topic: str) -> str:
    return f"er:presence:{topic}"


class RedisPresenceChannel(PresenceChannel):
    """Members live in one hash per topic, each with its own expiry stamp.

    Joins and leaves are announced on a pub/sub channel; every announcement and
    a periodic sweep reload the hash and diff it against the cached members.
    """

    def __init__(
        self,
        client: Redis,
        topic: str,
        player_id: str,
        ttl_seconds: int | None = None,
    ) -> None:
        super().__init__(topic, player_id)
        self._client = client
        self._ttl_ms = max(3, int(ttl_seconds or settings.presence_ttl_seconds)) * 1000
        self._key = _presence_key(topic)
        self._events_channel = f"{self._key}:events"
        self._meta: PresenceMeta | None = None
        self._members: dict[str, PresenceMeta] = {}
        self._queue: asyncio.Queue[PresenceEvent | None] = asyncio.Queue()
        self._tasks: list[asyncio.Task[None]] = []
        self._closed = False

    async def track(self, meta: PresenceMeta) -> None:
        self._meta = meta
        await self._write_self()
        await self._announce("track")
        if not self._tasks:
            self._tasks = [
                asyncio.create_task(self._listen(), name=f"{self._key}:listen"),
                asyncio.create_task(self._refresh_loop(), name=f"{self._key}:refresh"),
                asyncio.create_task(self._sweep_loop(), name=f"{self._key}:sweep"),
            ]
        await self._reload()
        self._queue.put_nowait(PresenceEvent(kind="sync", members=dict(self._members)))

    async def untrack(self) -> None:
        self._meta = None
        try:
            await self._client.hdel(self._key, self.player_id)
            await self._announce("untrack")
        except Exception:
            logger.exception("Failed to untrack presence topic=%s", self.topic)

    def members(self) -> dict[str, PresenceMeta]:
        return dict(self._members)

    async def events(self) -> AsyncIterator[PresenceEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.untrack()
        for task in self._tasks:
            task.cancel()
        self._tasks = []
        self._queue.put_nowait(None)

    async def _announce(self, kind: str) -> None:
        await self._client.publish(
            self._events_channel,
            json.dumps({"type": kind, "playerId": self.player_id}, separators=(",", ":")),
        )

    async def _write_self(self) -> None:
        if self._meta is None:
            return
        payload = {
            "playerId": self._meta.player_id,
            "isAway": self._meta.is_away,
            "onlineAt": self._meta.online_at,
            "expiresAt": now_ms() + self._ttl_ms,
        }
        await self._client.hset(self._key, self.player_id, json.dumps(payload, separators=(",", ":")))
        await self._client.pexpire(self._key, self._ttl_ms * 4)

    async def _reload(self) -> None:
        raw = await self._client.hgetall(self._key)
        now_value = now_ms()
        fresh: dict[str, PresenceMeta] = {}
        expired: list[str] = []
        for field, value in (raw or {}).items():
            try:
                payload = json.loads(value)
            except ValueError:
                expired.append(field)
                continue
            if int(payload.get("expiresAt") or 0) < now_value:
                expired.append(field)
                continue
            fresh[field] = PresenceMeta(
                player_id=str(payload.get("playerId") or field),
                is_away=bool(payload.get("isAway")),
                online_at=int(payload.get("onlineAt") or 0),
            )
        if expired:
            await self._client.hdel(self._key, *expired)

        previous = self._members
        self._members = fresh
        joined = tuple(pid for pid in fresh if pid not in previous)
        left = tuple(pid for pid in previous if pid not in fresh)
        changed = tuple(pid for pid in fresh if pid in previous and previous[pid] != fresh[pid])
        if joined:
            self._emit("join", joined)
        if left:
            self._emit("leave", left)
        if changed:
            self._emit("sync", changed)

    def _emit(self, kind: PresenceEventKind, changed: tuple[str, ...]) -> None:
        self._queue.put_nowait(PresenceEvent(kind=kind, members=dict(self._members), changed=changed))

    async def _listen(self) -> None:
        while not self._closed:
            pubsub = self._client.pubsub()
            try:
                await pubsub.subscribe(self._events_channel)
                async for message in pubsub.listen():
                    if message["type"] == "message":
                        await self._reload()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Presence listener failed topic=%s", self.topic)
                await asyncio.sleep(2)
            finally:
                await pubsub.aclose()

    async def _refresh_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._ttl_ms / 3000)
            try:
                await self._write_self()
            except Exception:
                logger.exception("Presence refresh failed topic=%s", self.topic)

    async def _sweep_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._ttl_ms / 2000)
            try:
                await self._reload()
            except Exception:
                logger.exception("Presence sweep failed topic=%s", self.topic)


def redis_presence_factory(client: Redis, ttl_seconds: int | None = None) -> PresenceFactory:
    def factory(topic: str, player_id: str) -> PresenceChannel:
        return RedisPresenceChannel(client, topic, player_id, ttl_seconds=ttl_seconds)

    return factory
