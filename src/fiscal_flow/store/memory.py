"""In-process record store used by tests and the memory backend."""

import asyncio
import copy
from collections import defaultdict
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import structlog

from fiscal_flow.errors import PreconditionFailedError, RowNotFoundError
from fiscal_flow.store.base import (
    Filters,
    Insert,
    Operation,
    RecordStore,
    Row,
    Update,
    matches,
    normalize,
)

logger = structlog.get_logger(__name__)


def _sort_rows(rows: list[Row], order_by: Sequence[str]) -> list[Row]:
    # Apply keys from last to first; list.sort is stable.
    for key in reversed(order_by):
        descending = key.startswith("-")
        column = key.lstrip("-")
        present = [r for r in rows if r.get(column) is not None]
        missing = [r for r in rows if r.get(column) is None]
        present.sort(key=lambda r: normalize(r[column]), reverse=descending)
        rows = present + missing
    return rows


class InMemoryRecordStore(RecordStore):
    """Dict-of-tables store guarded by a single asyncio lock."""

    def __init__(self, tables: dict[str, list[Row]] | None = None):
        self._tables: dict[str, dict[str, Row]] = defaultdict(dict)
        self._lock = asyncio.Lock()
        for table, rows in (tables or {}).items():
            for row in rows:
                self._insert_locked(table, row)

    def _insert_locked(self, table: str, row: Row) -> Row:
        stored = copy.deepcopy(row)
        if stored.get("id") is None:
            stored["id"] = uuid4()
        if stored.get("created_at") is None:
            stored["created_at"] = datetime.now(UTC)
        self._tables[table][str(stored["id"])] = stored
        return copy.deepcopy(stored)

    def _check_update(self, table: str, row_id: Any, expected: Filters | None) -> Row:
        row = self._tables[table].get(str(row_id))
        if row is None:
            raise RowNotFoundError(table, row_id)
        if expected and not matches(row, expected):
            raise PreconditionFailedError(table, row_id, expected)
        return row

    def rows(self, table: str) -> list[Row]:
        """Snapshot of a table, in insertion order."""
        return [copy.deepcopy(r) for r in self._tables[table].values()]

    async def get(self, table: str, row_id: Any) -> Row | None:
        async with self._lock:
            row = self._tables[table].get(str(row_id))
            return copy.deepcopy(row) if row is not None else None

    async def select(
        self,
        table: str,
        filters: Filters | None = None,
        order_by: Sequence[str] = (),
        limit: int | None = None,
    ) -> list[Row]:
        async with self._lock:
            rows = [r for r in self._tables[table].values() if matches(r, filters)]
            rows = _sort_rows(rows, order_by)
            if limit is not None:
                rows = rows[:limit]
            return [copy.deepcopy(r) for r in rows]

    async def count(self, table: str, filters: Filters | None = None) -> int:
        async with self._lock:
            return sum(1 for r in self._tables[table].values() if matches(r, filters))

    async def insert(self, table: str, row: Row) -> Row:
        async with self._lock:
            return self._insert_locked(table, row)

    async def update(
        self,
        table: str,
        row_id: Any,
        values: Row,
        expected: Filters | None = None,
    ) -> Row:
        async with self._lock:
            row = self._check_update(table, row_id, expected)
            row.update(copy.deepcopy(values))
            return copy.deepcopy(row)

    async def commit(self, operations: Sequence[Operation]) -> list[Row]:
        async with self._lock:
            for op in operations:
                if isinstance(op, Update):
                    self._check_update(op.table, op.id, op.expected)

            results: list[Row] = []
            for op in operations:
                if isinstance(op, Insert):
                    results.append(self._insert_locked(op.table, op.row))
                else:
                    row = self._tables[op.table][str(op.id)]
                    row.update(copy.deepcopy(op.values))
                    results.append(copy.deepcopy(row))

            logger.debug("commit_applied", operations=len(operations))
            return results
