"""Postgres-backed record store.

Uses ``asyncpg`` directly.  Each unit of work holds one pooled connection and
one open transaction; staged writes are flushed (as upserts and deletes)
before every read and on ``save()``, which commits and opens a fresh
transaction.  Leaving the unit of work without saving rolls back.

Record classes map onto tables through their ``TABLE`` / ``KEY`` attributes and
their dataclass fields, one column per field.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncGenerator

import asyncpg

from sleepsolver.config import Settings, get_settings
from sleepsolver.sleep.errors import PersistenceFailure
from sleepsolver.sleep.store import (
    OrderBy,
    Store,
    UnitOfWork,
    Where,
    order_fields,
    record_key,
    split_lookup,
)

logger = logging.getLogger("sleepsolver.db")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS stage_samples (
    "uuid"         TEXT PRIMARY KEY,
    "stage"        SMALLINT NOT NULL,
    "start"        TIMESTAMPTZ NOT NULL,
    "end"          TIMESTAMPTZ NOT NULL,
    "source"       TEXT NOT NULL,
    "product_type" TEXT NOT NULL DEFAULT '',
    "time_zone"    TEXT,
    "period_id"    TEXT
);
CREATE INDEX IF NOT EXISTS stage_samples_period_idx ON stage_samples ("period_id");

CREATE TABLE IF NOT EXISTS sleep_periods (
    "id"             TEXT PRIMARY KEY,
    "start"          TIMESTAMPTZ NOT NULL,
    "end"            TIMESTAMPTZ NOT NULL,
    "source"         TEXT NOT NULL,
    "time_zone"      TEXT NOT NULL DEFAULT 'UTC',
    "is_major_sleep" BOOLEAN NOT NULL DEFAULT FALSE,
    "is_resolved"    BOOLEAN NOT NULL DEFAULT FALSE,
    "session_day"    DATE,
    "duration"       DOUBLE PRECISION NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS sleep_periods_source_start_idx ON sleep_periods ("source", "start");
CREATE INDEX IF NOT EXISTS sleep_periods_session_idx ON sleep_periods ("session_day");
CREATE INDEX IF NOT EXISTS sleep_periods_unresolved_idx ON sleep_periods ("is_resolved") WHERE NOT "is_resolved";

CREATE TABLE IF NOT EXISTS sleep_sessions (
    "ownership_day"            DATE PRIMARY KEY,
    "start"                    TIMESTAMPTZ,
    "end"                      TIMESTAMPTZ,
    "time_in_bed"              DOUBLE PRECISION NOT NULL DEFAULT 0,
    "total_sleep"              DOUBLE PRECISION NOT NULL DEFAULT 0,
    "deep"                     DOUBLE PRECISION NOT NULL DEFAULT 0,
    "rem"                      DOUBLE PRECISION NOT NULL DEFAULT 0,
    "awake"                    DOUBLE PRECISION NOT NULL DEFAULT 0,
    "sleep_score"              DOUBLE PRECISION NOT NULL DEFAULT 0,
    "average_heart_rate"       DOUBLE PRECISION NOT NULL DEFAULT 0,
    "average_hrv"              DOUBLE PRECISION NOT NULL DEFAULT 0,
    "average_spo2"             DOUBLE PRECISION NOT NULL DEFAULT 0,
    "average_respiratory_rate" DOUBLE PRECISION NOT NULL DEFAULT 0,
    "wrist_temperature"        DOUBLE PRECISION NOT NULL DEFAULT 0,
    "hrv_status"               DOUBLE PRECISION NOT NULL DEFAULT -100,
    "rhr_status"               DOUBLE PRECISION NOT NULL DEFAULT -100,
    "spo2_status"              DOUBLE PRECISION NOT NULL DEFAULT -100,
    "respiratory_status"       DOUBLE PRECISION NOT NULL DEFAULT -100,
    "temperature_status"       DOUBLE PRECISION NOT NULL DEFAULT -100,
    "hrv_baseline"             DOUBLE PRECISION NOT NULL DEFAULT -100,
    "rhr_baseline"             DOUBLE PRECISION NOT NULL DEFAULT -100,
    "spo2_baseline"            DOUBLE PRECISION NOT NULL DEFAULT -100,
    "respiratory_baseline"     DOUBLE PRECISION NOT NULL DEFAULT -100,
    "temperature_baseline"     DOUBLE PRECISION NOT NULL DEFAULT -100,
    "is_finalized"             BOOLEAN NOT NULL DEFAULT FALSE
);
ALTER TABLE sleep_sessions ALTER COLUMN "sleep_score" TYPE DOUBLE PRECISION;

CREATE TABLE IF NOT EXISTS wrist_temperatures (
    "uuid"        TEXT PRIMARY KEY,
    "recorded_at" TIMESTAMPTZ NOT NULL,
    "value"       DOUBLE PRECISION NOT NULL,
    "is_resolved" BOOLEAN NOT NULL DEFAULT FALSE,
    "session_day" DATE
);
CREATE INDEX IF NOT EXISTS wrist_temperatures_recorded_idx ON wrist_temperatures ("recorded_at");

CREATE TABLE IF NOT EXISTS daily_habit_metrics (
    "day"              DATE PRIMARY KEY,
    "steps"            DOUBLE PRECISION NOT NULL DEFAULT 0,
    "exercise_minutes" DOUBLE PRECISION NOT NULL DEFAULT 0,
    "daylight_minutes" DOUBLE PRECISION NOT NULL DEFAULT 0,
    "session_day"      DATE
);

CREATE TABLE IF NOT EXISTS workouts (
    "uuid"               TEXT PRIMARY KEY,
    "start"              TIMESTAMPTZ NOT NULL,
    "workout_type"       TEXT NOT NULL,
    "duration"           DOUBLE PRECISION NOT NULL,
    "time_of_day"        TEXT NOT NULL DEFAULT '',
    "calories"           DOUBLE PRECISION NOT NULL DEFAULT 0,
    "distance"           DOUBLE PRECISION NOT NULL DEFAULT 0,
    "average_heart_rate" DOUBLE PRECISION NOT NULL DEFAULT 0,
    "session_day"        DATE
);
CREATE INDEX IF NOT EXISTS workouts_session_idx ON workouts ("session_day");

CREATE TABLE IF NOT EXISTS sync_cursors (
    "stream"     TEXT PRIMARY KEY,
    "token"      TEXT,
    "updated_at" TIMESTAMPTZ NOT NULL
);
"""

_SQL_OPERATORS = {"eq": "=", "lt": "<", "lte": "<=", "gt": ">", "gte": ">="}


# ---------------------------------------------------------------------------
# SQL builders
# ---------------------------------------------------------------------------


def _q(name: str) -> str:
    """Quote an identifier (``end`` is reserved in Postgres)."""
    return f'"{name}"'


def _db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_db_value(v) for v in value]
    return value


def record_columns(kind: type) -> list[str]:
    return [f.name for f in dataclasses.fields(kind)]


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(_q(c) for c in columns)
    conflict_target = ", ".join(_q(c) for c in conflict_columns)

    if update_columns:
        update_set = ", ".join(f"{_q(col)} = EXCLUDED.{_q(col)}" for col in update_columns)
        do_clause = f"DO UPDATE SET {update_set}"
    else:
        do_clause = "DO NOTHING"

    return (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )


def build_where_clause(where: Where | None, start_index: int = 1) -> tuple[str, list[Any]]:
    """Translate a lookup dict into a ``WHERE`` clause with ``$n`` placeholders.

    Returns:
        ``(" WHERE ...", params)``, or ``("", [])`` for an empty predicate.
    """
    clauses: list[str] = []
    params: list[Any] = []
    for lookup, value in (where or {}).items():
        name, op = split_lookup(lookup)
        col = _q(name)
        if value is None and op in ("eq", "ne"):
            clauses.append(f"{col} IS {'NOT ' if op == 'ne' else ''}NULL")
            continue
        params.append(_db_value(value))
        placeholder = f"${start_index + len(params) - 1}"
        if op == "in":
            clauses.append(f"{col} = ANY({placeholder})")
        elif op == "ne":
            clauses.append(f"{col} IS DISTINCT FROM {placeholder}")
        else:
            clauses.append(f"{col} {_SQL_OPERATORS[op]} {placeholder}")
    if not clauses:
        return "", []
    return " WHERE " + " AND ".join(clauses), params


def build_order_clause(order_by: OrderBy) -> str:
    parts = [
        f"{_q(name)} DESC NULLS LAST" if descending else f"{_q(name)} ASC NULLS FIRST"
        for name, descending in order_fields(order_by)
    ]
    return f" ORDER BY {', '.join(parts)}" if parts else ""


def build_select_query(
    kind: type, where: Where | None, order_by: OrderBy, limit: int | None
) -> tuple[str, list[Any]]:
    clause, params = build_where_clause(where)
    sql = (
        f"SELECT {', '.join(_q(c) for c in record_columns(kind))} FROM {kind.TABLE}"
        f"{clause}{build_order_clause(order_by)}"
    )
    if limit is not None:
        sql += f" LIMIT {int(limit)}"
    return sql, params


# ---------------------------------------------------------------------------
# Unit of work / store
# ---------------------------------------------------------------------------


class PostgresUnitOfWork(UnitOfWork):
    """Unit of work bound to one connection and transaction."""

    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn
        self._tx: Any = None
        self._identity: dict[tuple[type, Any], Any] = {}
        self._pending: list[tuple[str, type, Any]] = []

    async def begin(self) -> None:
        self._tx = self._conn.transaction()
        await self._tx.start()

    async def close(self) -> None:
        if self._tx is not None:
            await self._tx.rollback()
            self._tx = None

    async def _flush(self) -> None:
        ops, self._pending = self._pending, []
        try:
            for op, kind, value in ops:
                if op == "upsert":
                    columns = record_columns(kind)
                    await self._conn.execute(
                        build_upsert_query(kind.TABLE, columns, [kind.KEY]),
                        *[_db_value(getattr(value, c)) for c in columns],
                    )
                else:
                    await self._conn.execute(
                        f"DELETE FROM {kind.TABLE} WHERE {_q(kind.KEY)} = $1", _db_value(value)
                    )
        except (asyncpg.PostgresError, OSError) as exc:
            await self.rollback()
            logger.error("Flush failed: %s", exc)
            raise PersistenceFailure(f"Flush failed: {exc}") from exc

    async def fetch(
        self,
        kind: type,
        where: Where | None = None,
        order_by: OrderBy = None,
        limit: int | None = None,
    ) -> list[Any]:
        await self._flush()
        sql, params = build_select_query(kind, where, order_by, limit)
        try:
            rows = await self._conn.fetch(sql, *params)
        except (asyncpg.PostgresError, OSError) as exc:
            await self.rollback()
            raise PersistenceFailure(f"Query on {kind.TABLE} failed: {exc}") from exc

        records = []
        for row in rows:
            ident = (kind, row[kind.KEY])
            if ident not in self._identity:
                self._identity[ident] = kind(**dict(row))
            records.append(self._identity[ident])
        return records

    def insert(self, record: Any) -> None:
        kind = type(record)
        self._identity[(kind, record_key(record))] = record
        self._pending.append(("upsert", kind, record))

    def _delete_key(self, kind: type, key: Any) -> None:
        self._identity.pop((kind, key), None)
        self._pending.append(("delete", kind, key))

    def delete(self, record: Any) -> None:
        self._delete_key(type(record), record_key(record))

    def rekey(self, record: Any, old_key: Any) -> None:
        if old_key != record_key(record):
            self._delete_key(type(record), old_key)
        self.insert(record)

    async def save(self) -> None:
        await self._flush()
        try:
            await self._tx.commit()
        except (asyncpg.PostgresError, OSError) as exc:
            self._tx = None
            await self.rollback()
            raise PersistenceFailure(f"Commit failed: {exc}") from exc
        await self.begin()

    async def rollback(self) -> None:
        self._pending.clear()
        self._identity.clear()
        if self._tx is not None:
            await self._tx.rollback()
        await self.begin()


class PostgresStore(Store):
    """Store over an asyncpg pool; units of work are serialized per store."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def perform(self) -> AsyncGenerator[PostgresUnitOfWork, None]:
        async with self._lock:
            async with self._pool.acquire() as conn:
                uow = PostgresUnitOfWork(conn)
                await uow.begin()
                try:
                    yield uow
                finally:
                    await uow.close()

    async def ping(self) -> bool:
        async with self._pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
        return True

    async def close(self) -> None:
        await close_pool()


# ---------------------------------------------------------------------------
# Pool lifecycle
# ---------------------------------------------------------------------------

# Module-level connection pool — initialized once at app startup
_pool: asyncpg.Pool | None = None


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at app startup."""
    global _pool
    s = settings or get_settings()
    _pool = await asyncpg.create_pool(
        s.database_url,
        min_size=1,
        max_size=s.database_pool_size,
        command_timeout=30,
    )
    logger.info("Database pool initialized (max=%d)", s.database_pool_size)
    return _pool


async def close_pool() -> None:
    """Drain the pool. Call at app shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized — call init_pool() first")
    return _pool


async def init_schema(pool: asyncpg.Pool | None = None) -> None:
    """Create tables and indexes if they do not exist."""
    async with (pool or get_pool()).acquire() as conn:
        await conn.execute(SCHEMA_SQL)
    logger.info("Database schema ensured")
