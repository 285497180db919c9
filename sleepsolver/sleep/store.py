"""Transactional record store used by every pipeline stage.

All reads and writes happen inside a unit of work opened with
``store.perform()``.  Only one unit of work per store is active at a time, so
merges, session resolution and scoring never interleave their writes::

    async with store.perform() as uow:
        periods = await uow.fetch(SleepPeriod, {"is_resolved": False}, order_by="start")
        for period in periods:
            period.is_resolved = True
            uow.insert(period)
        await uow.save()

Records returned by ``fetch`` are private to the unit of work: a changed record
must be handed back with ``insert()`` before ``save()`` persists it.  Leaving
the block without saving discards pending changes.

Predicates are lookup dicts.  A bare field name tests equality; suffixes
``__ne``, ``__lt``, ``__lte``, ``__gt``, ``__gte`` and ``__in`` select the
other comparisons.  ``order_by`` takes field names, ``-`` prefixed for
descending order.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable

from sleepsolver.sleep.base import RECORD_TYPES
from sleepsolver.sleep.errors import PersistenceFailure

logger = logging.getLogger("sleepsolver.sleep.store")

Where = dict[str, Any]
OrderBy = str | list[str] | None

LOOKUP_OPERATORS = ("eq", "ne", "lt", "lte", "gt", "gte", "in")


# ---------------------------------------------------------------------------
# Predicate helpers
# ---------------------------------------------------------------------------


def split_lookup(lookup: str) -> tuple[str, str]:
    """Split ``"start__gte"`` into ``("start", "gte")``.

    Raises:
        ValueError: If the operator suffix is unknown.
    """
    name, _, op = lookup.partition("__")
    op = op or "eq"
    if op not in LOOKUP_OPERATORS:
        raise ValueError(f"Unknown lookup operator {op!r} in {lookup!r}")
    return name, op


def matches(record: Any, where: Where | None) -> bool:
    """Return True if ``record`` satisfies every lookup in ``where``."""
    for lookup, expected in (where or {}).items():
        name, op = split_lookup(lookup)
        actual = getattr(record, name)
        if op == "eq":
            ok = actual == expected
        elif op == "ne":
            ok = actual != expected
        elif op == "in":
            ok = actual in expected
        elif actual is None or expected is None:
            ok = False
        elif op == "lt":
            ok = actual < expected
        elif op == "lte":
            ok = actual <= expected
        elif op == "gt":
            ok = actual > expected
        else:
            ok = actual >= expected
        if not ok:
            return False
    return True


def order_fields(order_by: OrderBy) -> list[tuple[str, bool]]:
    """Normalise ``order_by`` into ``[(field, descending), ...]``."""
    if not order_by:
        return []
    names = [order_by] if isinstance(order_by, str) else list(order_by)
    return [(n[1:], True) if n.startswith("-") else (n, False) for n in names]


def sort_records(records: Iterable[Any], order_by: OrderBy) -> list[Any]:
    """Sort records by one or more fields; None sorts first ascending."""
    result = list(records)
    # Stable sorts applied from the last key to the first
    for name, descending in reversed(order_fields(order_by)):
        result.sort(
            key=lambda r, n=name: (getattr(r, n) is not None, getattr(r, n)),
            reverse=descending,
        )
    return result


def record_key(record: Any) -> Any:
    return getattr(record, type(record).KEY)


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------


class UnitOfWork(ABC):
    """A scoped set of reads and pending writes against one store."""

    @abstractmethod
    async def fetch(
        self,
        kind: type,
        where: Where | None = None,
        order_by: OrderBy = None,
        limit: int | None = None,
    ) -> list[Any]:
        """Return records of ``kind`` matching ``where``, pending changes included."""

    async def get(self, kind: type, key: Any) -> Any | None:
        """Return the record of ``kind`` with primary key ``key``, or None."""
        rows = await self.fetch(kind, {kind.KEY: key}, limit=1)
        return rows[0] if rows else None

    @abstractmethod
    def insert(self, record: Any) -> None:
        """Stage an insert, replacing any record with the same key."""

    @abstractmethod
    def delete(self, record: Any) -> None:
        """Stage deletion of the record with ``record``'s key."""

    @abstractmethod
    def rekey(self, record: Any, old_key: Any) -> None:
        """Stage moving a record from ``old_key`` to its current key."""

    @abstractmethod
    async def save(self) -> None:
        """Persist pending changes atomically.

        Raises:
            PersistenceFailure: The commit failed; pending changes were rolled back.
        """

    @abstractmethod
    async def rollback(self) -> None:
        """Discard pending changes."""


class Store(ABC):
    """A persistent record store with serialized units of work."""

    @abstractmethod
    def perform(self) -> Any:
        """Async context manager yielding a UnitOfWork.

        Only one unit of work per store runs at a time.  Unsaved changes are
        rolled back when the block exits.
        """

    async def ping(self) -> bool:
        """Lightweight connectivity check."""
        return True

    async def close(self) -> None:
        """Release any held resources."""


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class InMemoryUnitOfWork(UnitOfWork):
    """Unit of work over an InMemoryStore.

    Keeps an identity map so that repeated fetches within one unit of work
    return the same objects.
    """

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store
        self._identity: dict[tuple[type, Any], Any] = {}
        self._pending: dict[tuple[type, Any], Any] = {}
        self._deleted: set[tuple[type, Any]] = set()

    def _load(self, kind: type, key: Any) -> Any:
        ident = (kind, key)
        if ident not in self._identity:
            self._identity[ident] = copy.copy(self._store._tables[kind][key])
        return self._identity[ident]

    def _view(self, kind: type) -> list[Any]:
        rows: dict[Any, Any] = {}
        for key in self._store._tables[kind]:
            if (kind, key) not in self._deleted:
                rows[key] = self._load(kind, key)
        for (pending_kind, key), record in self._pending.items():
            if pending_kind is kind:
                rows[key] = record
        return list(rows.values())

    async def fetch(
        self,
        kind: type,
        where: Where | None = None,
        order_by: OrderBy = None,
        limit: int | None = None,
    ) -> list[Any]:
        rows = [r for r in self._view(kind) if matches(r, where)]
        rows = sort_records(rows, order_by)
        return rows[:limit] if limit is not None else rows

    def insert(self, record: Any) -> None:
        ident = (type(record), record_key(record))
        self._deleted.discard(ident)
        self._pending[ident] = record
        self._identity[ident] = record

    def _delete_key(self, kind: type, key: Any) -> None:
        ident = (kind, key)
        self._pending.pop(ident, None)
        self._identity.pop(ident, None)
        self._deleted.add(ident)

    def delete(self, record: Any) -> None:
        self._delete_key(type(record), record_key(record))

    def rekey(self, record: Any, old_key: Any) -> None:
        if old_key == record_key(record):
            self.insert(record)
            return
        self._delete_key(type(record), old_key)
        self.insert(record)

    async def save(self) -> None:
        try:
            self._store._apply(self._pending, self._deleted)
        except Exception as exc:
            await self.rollback()
            logger.error("In-memory commit failed: %s", exc)
            raise PersistenceFailure(f"Commit failed: {exc}") from exc
        self._pending.clear()
        self._deleted.clear()

    async def rollback(self) -> None:
        self._pending.clear()
        self._deleted.clear()
        self._identity.clear()


class InMemoryStore(Store):
    """Process-local store.  Used in tests and when no database is configured."""

    def __init__(self) -> None:
        self._tables: dict[type, dict[Any, Any]] = {kind: {} for kind in RECORD_TYPES}
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def perform(self) -> AsyncIterator[InMemoryUnitOfWork]:
        async with self._lock:
            uow = InMemoryUnitOfWork(self)
            try:
                yield uow
            finally:
                await uow.rollback()

    def _apply(
        self,
        pending: dict[tuple[type, Any], Any],
        deleted: set[tuple[type, Any]],
    ) -> None:
        staged = {kind: dict(rows) for kind, rows in self._tables.items()}
        for kind, key in deleted:
            staged[kind].pop(key, None)
        for (kind, key), record in pending.items():
            staged[kind][key] = copy.copy(record)
        self._tables = staged

    def records(self, kind: type, order_by: OrderBy = None) -> list[Any]:
        """Copies of every committed record of ``kind``."""
        return sort_records(
            (copy.copy(r) for r in self._tables[kind].values()), order_by
        )
