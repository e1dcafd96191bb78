"""Narrow record store interface consumed by every service."""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import UUID

# Filter values: None matches IS NULL, a list/tuple/set matches IN, anything
# else matches by equality.
Filters = dict[str, Any]
Row = dict[str, Any]


@dataclass(frozen=True)
class Insert:
    """Insert one row as part of a commit."""

    table: str
    row: Row


@dataclass(frozen=True)
class Update:
    """Update one row as part of a commit, guarded by optional preconditions."""

    table: str
    id: Any
    values: Row
    expected: Filters = field(default_factory=dict)


Operation = Insert | Update


def normalize(value: Any) -> Any:
    """Normalize a value for comparison across backends."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    return value


def matches(row: Row, filters: Filters | None) -> bool:
    """Check whether a row satisfies equality/IS NULL/IN filters."""
    for column, expected in (filters or {}).items():
        actual = normalize(row.get(column))
        if expected is None:
            if actual is not None:
                return False
        elif isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in {normalize(v) for v in expected}:
                return False
        elif actual != normalize(expected):
            return False
    return True


class RecordStore(ABC):
    """Durable table storage with conditional updates and atomic commits.

    Implementations must guarantee that ``update`` with ``expected`` is a
    single compare-and-set, and that ``commit`` applies every operation or
    none of them.
    """

    @abstractmethod
    async def get(self, table: str, row_id: Any) -> Row | None:
        """Fetch one row by id."""

    @abstractmethod
    async def select(
        self,
        table: str,
        filters: Filters | None = None,
        order_by: Sequence[str] = (),
        limit: int | None = None,
    ) -> list[Row]:
        """List rows matching filters.

        Args:
            table: Table name.
            filters: Column filters.
            order_by: Columns to sort by, prefixed with "-" for descending.
            limit: Maximum number of rows.
        """

    @abstractmethod
    async def count(self, table: str, filters: Filters | None = None) -> int:
        """Count rows matching filters."""

    @abstractmethod
    async def insert(self, table: str, row: Row) -> Row:
        """Insert a row, assigning ``id`` and ``created_at`` when absent."""

    @abstractmethod
    async def update(
        self,
        table: str,
        row_id: Any,
        values: Row,
        expected: Filters | None = None,
    ) -> Row:
        """Update one row.

        Raises:
            RowNotFoundError: The row does not exist.
            PreconditionFailedError: The row does not match ``expected``.
        """

    @abstractmethod
    async def commit(self, operations: Sequence[Operation]) -> list[Row]:
        """Apply inserts and conditional updates atomically.

        Returns:
            The resulting rows, in operation order.
        """

    async def close(self) -> None:
        """Release any underlying resources."""
        return None
