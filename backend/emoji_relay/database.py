from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable

import asyncpg
from sqlalchemy.dialects import postgresql
from sqlalchemy.schema import CreateIndex, CreateTable

from .config import settings
from .models import Base
from .record_store import RecordStore, check_player_fields
from .session_errors import ConnectionTimeout
from .session_types import ChangeEvent, GameStateRecord, Phase, PlayerRecord, RoomRecord, RoomStatus
from .session_utils import now_ms, random_id

logger = logging.getLogger(__name__)

CHANGES_CHANNEL = "emoji_relay_changes"
LISTENER_RETRY_S = 2.0

_CONNECTION_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
)

NOTIFY_FUNCTION_SQL = f"""
CREATE OR REPLACE FUNCTION emoji_relay_notify() RETURNS trigger AS $$
DECLARE
  rec RECORD;
BEGIN
  IF TG_OP = 'DELETE' THEN
    rec := OLD;
  ELSE
    rec := NEW;
  END IF;
  PERFORM pg_notify(
    '{CHANGES_CHANNEL}',
    jsonb_build_object(
      'table', TG_TABLE_NAME,
      'op', TG_OP,
      'id', COALESCE(to_jsonb(rec)->>'id', to_jsonb(rec)->>'room_id'),
      'room_id', COALESCE(to_jsonb(rec)->>'room_id', to_jsonb(rec)->>'id')
    )::text
  );
  RETURN rec;
END;
$$ LANGUAGE plpgsql
"""


def is_database_configured() -> bool:
    return bool(settings.database_url)


def normalized_database_url(raw: str | None = None) -> str:
    url = (raw or settings.database_url).strip()
    if url.startswith("postgresql+asyncpg://"):
        return "postgresql://" + url[len("postgresql+asyncpg://") :]
    return url


def schema_statements() -> list[str]:
    dialect = postgresql.dialect()
    statements: list[str] = []
    for table in Base.metadata.sorted_tables:
        statements.append(str(CreateTable(table, if_not_exists=True).compile(dialect=dialect)))
        for index in sorted(table.indexes, key=lambda item: item.name or ""):
            statements.append(str(CreateIndex(index, if_not_exists=True).compile(dialect=dialect)))
    statements.append(NOTIFY_FUNCTION_SQL)
    for table in Base.metadata.sorted_tables:
        statements.append(f"DROP TRIGGER IF EXISTS {table.name}_notify ON {table.name}")
        statements.append(
            f"CREATE TRIGGER {table.name}_notify AFTER INSERT OR UPDATE OR DELETE ON {table.name} "
            "FOR EACH ROW EXECUTE FUNCTION emoji_relay_notify()"
        )
    return statements


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


def _room_from_row(row: asyncpg.Record) -> RoomRecord:
    return RoomRecord(
        id=str(row["id"]),
        room_code=str(row["room_code"]),
        status=row["status"],
        settings=dict(row["settings"] or {}),
        created_at=int(row["created_at"] or 0),
        revision=int(row["revision"] or 0),
    )


def _player_from_row(row: asyncpg.Record) -> PlayerRecord:
    return PlayerRecord(
        id=str(row["id"]),
        room_id=str(row["room_id"]),
        name=str(row["name"] or ""),
        avatar=str(row["avatar"] or ""),
        is_host=bool(row["is_host"]),
        score=int(row["score"] or 0),
        votes_used=dict(row["votes_used"] or {}),
        last_answer=row["last_answer"],
        last_seen=int(row["last_seen"] or 0),
        created_at=int(row["created_at"] or 0),
        revision=int(row["revision"] or 0),
    )


def _game_state_from_row(row: asyncpg.Record) -> GameStateRecord:
    return GameStateRecord(
        room_id=str(row["room_id"]),
        phase=row["phase"],
        phase_expiry=int(row["phase_expiry"]) if row["phase_expiry"] is not None else None,
        timer=int(row["timer"] or 0),
        revision=int(row["revision"] or 0),
    )


class PostgresRecordStore(RecordStore):
    """asyncpg-backed store; change events come from LISTEN/NOTIFY.

    Notifications only carry ids, so each one is followed by a read of the row.
    Events can therefore lag or repeat, which the session mirror tolerates.
    """

    def __init__(self, dsn: str | None = None, *, min_size: int = 1, max_size: int = 10) -> None:
        super().__init__()
        self.dsn = normalized_database_url(dsn)
        self.min_size = min_size
        self.max_size = max_size
        self._pool: asyncpg.Pool | None = None
        self._listener: asyncpg.Connection | None = None
        self._listener_task: asyncio.Task[None] | None = None
        self._dispatch_tasks: set[asyncio.Task[None]] = set()
        self._closed = False

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(
                    dsn=self.dsn,
                    min_size=self.min_size,
                    max_size=self.max_size,
                    init=_init_connection,
                )
            except _CONNECTION_ERRORS as exc:
                raise ConnectionTimeout(f"database unavailable: {exc}") from exc
        return self._pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        pool = await self._get_pool()
        try:
            async with pool.acquire(timeout=10) as conn:
                yield conn
        except _CONNECTION_ERRORS as exc:
            raise ConnectionTimeout(f"database unavailable: {exc}") from exc

    async def init(self) -> None:
        async with self._connection() as conn:
            async with conn.transaction():
                for statement in schema_statements():
                    await conn.execute(statement)
        await self._connect_listener()
        logger.info("PostgreSQL record store ready")

    async def _connect_listener(self) -> None:
        conn = await asyncpg.connect(dsn=self.dsn)
        conn.add_termination_listener(self._on_listener_terminated)
        await conn.add_listener(CHANGES_CHANNEL, self._on_notify)
        self._listener = conn

    def _on_listener_terminated(self, conn: asyncpg.Connection) -> None:
        if self._closed:
            return
        logger.warning("Change listener connection lost, failing feeds")
        self._listener = None
        for feed in list(self._feeds):
            feed.fail()
        if self._listener_task is None or self._listener_task.done():
            self._listener_task = asyncio.create_task(self._reconnect_listener())

    async def _reconnect_listener(self) -> None:
        while not self._closed and self._listener is None:
            await asyncio.sleep(LISTENER_RETRY_S)
            try:
                await self._connect_listener()
                logger.info("Change listener reconnected")
            except _CONNECTION_ERRORS:
                logger.warning("Change listener reconnect failed", exc_info=True)

    def _on_notify(self, conn: asyncpg.Connection, pid: int, channel: str, payload: str) -> None:
        try:
            data = json.loads(payload)
        except ValueError:
            logger.warning("Ignoring malformed change payload %r", payload)
            return
        task = asyncio.create_task(self._dispatch(data))
        self._dispatch_tasks.add(task)
        task.add_done_callback(self._dispatch_tasks.discard)

    async def _dispatch(self, data: dict[str, Any]) -> None:
        table = data.get("table")
        kind = data.get("op")
        record_id = str(data.get("id") or "")
        room_id = str(data.get("room_id") or "")
        if table not in ("rooms", "players", "game_state") or kind not in ("INSERT", "UPDATE", "DELETE"):
            return
        if not any(feed.room_id == room_id for feed in self._feeds):
            return
        new: Any = None
        if kind != "DELETE":
            try:
                if table == "rooms":
                    new = await self.get_room(record_id)
                elif table == "players":
                    new = await self.get_player(record_id)
                else:
                    new = await self.get_game_state(room_id)
            except ConnectionTimeout:
                logger.warning("Could not load %s %s for change event", table, record_id)
                return
            if new is None:
                return
        self._fan_out(ChangeEvent(table=table, kind=kind, record_id=record_id, room_id=room_id, new=new))

    async def create_room(
        self,
        room_code: str,
        settings: dict[str, Any],
        status: RoomStatus = "lobby",
    ) -> RoomRecord:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO rooms (id, room_code, status, settings, created_at, revision)
                VALUES ($1, $2, $3, $4::jsonb, $5, 0)
                RETURNING *
                """,
                random_id(),
                room_code,
                status,
                settings,
                now_ms(),
            )
        return _room_from_row(row)

    async def get_room(self, room_id: str) -> RoomRecord | None:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM rooms WHERE id = $1", room_id)
        return _room_from_row(row) if row else None

    async def find_rooms_by_code(self, room_code: str) -> list[RoomRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM rooms WHERE room_code = $1 ORDER BY created_at ASC, id ASC",
                room_code,
            )
        return [_room_from_row(row) for row in rows]

    async def update_room(
        self,
        room_id: str,
        *,
        settings: dict[str, Any] | None = None,
        status: RoomStatus | None = None,
    ) -> RoomRecord | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                UPDATE rooms
                SET settings = COALESCE($2::jsonb, settings),
                    status = COALESCE($3, status),
                    revision = revision + 1
                WHERE id = $1
                RETURNING *
                """,
                room_id,
                settings,
                status,
            )
        return _room_from_row(row) if row else None

    async def delete_room(self, room_id: str) -> None:
        async with self._connection() as conn:
            await conn.execute("DELETE FROM rooms WHERE id = $1", room_id)

    async def create_player(
        self,
        room_id: str,
        *,
        name: str,
        avatar: str,
        is_host: bool = False,
        last_seen: int = 0,
    ) -> PlayerRecord:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO players (
                  id, room_id, name, avatar, is_host, score, votes_used,
                  last_answer, last_seen, created_at, revision
                )
                VALUES ($1, $2, $3, $4, $5, 0, '{}'::jsonb, NULL, $6, $7, 0)
                RETURNING *
                """,
                random_id(),
                room_id,
                name,
                avatar,
                is_host,
                last_seen,
                now_ms(),
            )
        return _player_from_row(row)

    async def get_player(self, player_id: str) -> PlayerRecord | None:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM players WHERE id = $1", player_id)
        return _player_from_row(row) if row else None

    async def list_players(self, room_id: str) -> list[PlayerRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM players WHERE room_id = $1 ORDER BY created_at ASC, id ASC",
                room_id,
            )
        return [_player_from_row(row) for row in rows]

    @staticmethod
    def _set_clause(fields: dict[str, Any], start: int) -> tuple[str, list[Any]]:
        parts: list[str] = []
        values: list[Any] = []
        for offset, (key, value) in enumerate(sorted(fields.items())):
            cast = "::jsonb" if key == "votes_used" else ""
            parts.append(f"{key} = ${start + offset}{cast}")
            values.append(value)
        parts.append("revision = revision + 1")
        return ", ".join(parts), values

    async def update_player(self, player_id: str, **fields: Any) -> PlayerRecord | None:
        check_player_fields(fields)
        if not fields:
            return await self.get_player(player_id)
        clause, values = self._set_clause(fields, 2)
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"UPDATE players SET {clause} WHERE id = $1 RETURNING *",
                player_id,
                *values,
            )
        return _player_from_row(row) if row else None

    async def update_players(
        self,
        room_id: str,
        player_ids: Iterable[str] | None = None,
        **fields: Any,
    ) -> list[PlayerRecord]:
        check_player_fields(fields)
        if not fields:
            return await self.list_players(room_id)
        ids = list(player_ids) if player_ids is not None else None
        clause, values = self._set_clause(fields, 3)
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                UPDATE players SET {clause}
                WHERE room_id = $1 AND ($2::text[] IS NULL OR id = ANY($2::text[]))
                RETURNING *
                """,
                room_id,
                ids,
                *values,
            )
        return [_player_from_row(row) for row in rows]

    async def delete_player(self, player_id: str) -> None:
        async with self._connection() as conn:
            await conn.execute("DELETE FROM players WHERE id = $1", player_id)

    async def create_game_state(self, room_id: str, phase: Phase = "lobby") -> GameStateRecord:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO game_state (room_id, phase, phase_expiry, timer, revision)
                VALUES ($1, $2, NULL, 0, 0)
                ON CONFLICT (room_id) DO UPDATE
                SET phase = EXCLUDED.phase, revision = game_state.revision + 1
                RETURNING *
                """,
                room_id,
                phase,
            )
        return _game_state_from_row(row)

    async def get_game_state(self, room_id: str) -> GameStateRecord | None:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM game_state WHERE room_id = $1", room_id)
        return _game_state_from_row(row) if row else None

    async def update_game_state(
        self,
        room_id: str,
        *,
        phase: Phase,
        phase_expiry: int | None,
        timer: int = 0,
        expected_phase: Phase | None = None,
    ) -> GameStateRecord | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                UPDATE game_state
                SET phase = $2, phase_expiry = $3, timer = $4, revision = revision + 1
                WHERE room_id = $1 AND ($5::text IS NULL OR phase = $5::text)
                RETURNING *
                """,
                room_id,
                phase,
                phase_expiry,
                timer,
                expected_phase,
            )
        return _game_state_from_row(row) if row else None

    async def count_players(self, room_id: str) -> int:
        async with self._connection() as conn:
            value = await conn.fetchval("SELECT COUNT(*) FROM players WHERE room_id = $1", room_id)
        return int(value or 0)

    async def ping(self) -> bool:
        try:
            async with self._connection() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except ConnectionTimeout:
            logger.exception("Database ping failed")
            return False

    async def close(self) -> None:
        self._closed = True
        await super().close()
        if self._listener_task is not None:
            self._listener_task.cancel()
        for task in list(self._dispatch_tasks):
            task.cancel()
        if self._listener is not None:
            try:
                await self._listener.close()
            finally:
                self._listener = None
        if self._pool is not None:
            try:
                await self._pool.close()
            finally:
                self._pool = None
