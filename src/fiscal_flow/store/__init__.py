"""Record store interface and backends."""

from fiscal_flow.config import get_settings
from fiscal_flow.store.base import Filters, Insert, Operation, RecordStore, Row, Update
from fiscal_flow.store.memory import InMemoryRecordStore
from fiscal_flow.store.rest import RestRecordStore


def create_store() -> RecordStore:
    """Build the record store selected by settings."""
    settings = get_settings()
    if settings.store_backend == "rest":
        return RestRecordStore()
    return InMemoryRecordStore()


__all__ = [
    "Filters",
    "Insert",
    "InMemoryRecordStore",
    "Operation",
    "RecordStore",
    "RestRecordStore",
    "Row",
    "Update",
    "create_store",
]
