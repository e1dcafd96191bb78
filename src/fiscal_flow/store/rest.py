"""PostgREST-dialect record store over httpx."""

import asyncio
import re
from collections.abc import Sequence
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, cast
from uuid import UUID, uuid4

import httpx
import structlog

from fiscal_flow.config import get_settings
from fiscal_flow.errors import PreconditionFailedError, RowNotFoundError, StoreError
from fiscal_flow.store.base import Filters, Insert, Operation, RecordStore, Row

logger = structlog.get_logger(__name__)

_CONTENT_RANGE_TOTAL = re.compile(r"/(\d+)$")
_IDEMPOTENT_METHODS = frozenset({"GET", "HEAD"})
# The request never reached the server
_NOT_SENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)


def to_json(value: Any) -> Any:
    """Convert Python values into JSON-compatible ones."""
    if isinstance(value, dict):
        return {k: to_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _literal(value: Any) -> str:
    value = to_json(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def filter_params(filters: Filters | None) -> dict[str, str]:
    """Translate store filters into PostgREST query parameters."""
    params: dict[str, str] = {}
    for column, value in (filters or {}).items():
        if value is None:
            params[column] = "is.null"
        elif isinstance(value, (list, tuple, set, frozenset)):
            items = ",".join(f'"{_literal(v)}"' for v in value)
            params[column] = f"in.({items})"
        else:
            params[column] = f"eq.{_literal(value)}"
    return params


def order_param(order_by: Sequence[str]) -> str:
    parts = []
    for key in order_by:
        direction = "desc" if key.startswith("-") else "asc"
        parts.append(f"{key.lstrip('-')}.{direction}.nullslast")
    return ",".join(parts)


class RestRecordStore(RecordStore):
    """Record store backed by a PostgREST endpoint.

    Conditional updates are PATCH requests carrying the preconditions as
    extra filters. Atomic commits go through the ``commit_operations``
    database function, which raises SQLSTATE ``PT409`` when a precondition
    fails so PostgREST answers 409.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        max_retries: int = 2,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.store_url).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.store_api_key.get_secret_value()
        self._timeout = timeout or settings.store_timeout
        self._max_retries = max_retries
        self._client: httpx.AsyncClient | None = None
        self._logger = logger.bind(component="rest_store")

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self._timeout),
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self._api_key:
            headers["apikey"] = self._api_key
            headers["Authorization"] = f"Bearer {self._api_key}"
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, str] | None = None,
        json: Any = None,
        prefer: str | None = None,
        allow_conflict: bool = False,
        retry_count: int = 0,
    ) -> httpx.Response:
        """Make a request with retry on transport errors.

        Reads are retried on any transport error. Writes are retried only
        when the connection was never established, since a write that timed
        out may already have been applied.

        Args:
            allow_conflict: Return 409 responses to the caller instead of raising.
        """
        client = await self._get_client()
        try:
            response = await client.request(
                method=method,
                url=path,
                params=params,
                json=json,
                headers=self._get_headers(prefer),
            )
        except httpx.RequestError as e:
            retryable = method in _IDEMPOTENT_METHODS or isinstance(e, _NOT_SENT_ERRORS)
            if retryable and retry_count < self._max_retries:
                await asyncio.sleep(2**retry_count * 0.1)
                return await self._request(
                    method, path, params, json, prefer, allow_conflict, retry_count + 1
                )
            raise StoreError(f"Store request failed: {e}") from e

        if response.status_code == 409 and allow_conflict:
            return response
        if response.status_code >= 400:
            try:
                error_detail = response.json() if response.content else {}
            except ValueError:
                error_detail = {"raw": response.text[:500]}
            self._logger.error(
                "store_request_failed",
                method=method,
                path=path,
                status=response.status_code,
            )
            raise StoreError(
                f"Store error: {response.status_code}",
                status_code=409 if response.status_code == 409 else None,
                details=error_detail,
            )
        return response

    @staticmethod
    def _rows(response: httpx.Response) -> list[Row]:
        if not response.content:
            return []
        data = response.json()
        if isinstance(data, dict):
            return [cast(Row, data)]
        return cast(list[Row], data)

    async def get(self, table: str, row_id: Any) -> Row | None:
        response = await self._request(
            "GET", f"/{table}", params={"id": f"eq.{_literal(row_id)}", "limit": "1"}
        )
        rows = self._rows(response)
        return rows[0] if rows else None

    async def select(
        self,
        table: str,
        filters: Filters | None = None,
        order_by: Sequence[str] = (),
        limit: int | None = None,
    ) -> list[Row]:
        params = filter_params(filters)
        if order_by:
            params["order"] = order_param(order_by)
        if limit is not None:
            params["limit"] = str(limit)
        response = await self._request("GET", f"/{table}", params=params)
        return self._rows(response)

    async def count(self, table: str, filters: Filters | None = None) -> int:
        params = filter_params(filters)
        params["select"] = "id"
        params["limit"] = "1"
        response = await self._request("GET", f"/{table}", params=params, prefer="count=exact")
        match = _CONTENT_RANGE_TOTAL.search(response.headers.get("Content-Range", ""))
        if not match:
            raise StoreError("Store did not report a row count")
        return int(match.group(1))

    @staticmethod
    def _prepare_insert(row: Row) -> Row:
        prepared = dict(row)
        if prepared.get("id") is None:
            prepared["id"] = uuid4()
        if prepared.get("created_at") is None:
            prepared["created_at"] = datetime.now(UTC)
        return cast(Row, to_json(prepared))

    async def insert(self, table: str, row: Row) -> Row:
        response = await self._request(
            "POST",
            f"/{table}",
            json=self._prepare_insert(row),
            prefer="return=representation",
            allow_conflict=True,
        )
        if response.status_code == 409:
            raise StoreError(f"Duplicate row in {table}", status_code=409)
        rows = self._rows(response)
        if not rows:
            raise StoreError(f"Insert into {table} returned no row")
        return rows[0]

    async def update(
        self,
        table: str,
        row_id: Any,
        values: Row,
        expected: Filters | None = None,
    ) -> Row:
        params = filter_params(expected)
        params["id"] = f"eq.{_literal(row_id)}"
        response = await self._request(
            "PATCH",
            f"/{table}",
            params=params,
            json=to_json(values),
            prefer="return=representation",
        )
        rows = self._rows(response)
        if rows:
            return rows[0]

        # Empty representation: either the row is gone or the precondition failed.
        if await self.get(table, row_id) is None:
            raise RowNotFoundError(table, row_id)
        raise PreconditionFailedError(table, row_id, expected or {})

    async def commit(self, operations: Sequence[Operation]) -> list[Row]:
        payload = []
        for op in operations:
            if isinstance(op, Insert):
                payload.append(
                    {"op": "insert", "table": op.table, "row": self._prepare_insert(op.row)}
                )
            else:
                payload.append(
                    {
                        "op": "update",
                        "table": op.table,
                        "id": _literal(op.id),
                        "values": to_json(op.values),
                        "expected": to_json(op.expected),
                    }
                )

        response = await self._request(
            "POST", "/rpc/commit_operations", json={"operations": payload}, allow_conflict=True
        )
        if response.status_code == 409:
            detail = response.json() if response.content else {}
            failed = detail.get("details") if isinstance(detail, dict) else None
            self._logger.info("commit_precondition_failed", detail=failed)
            op = next((o for o in operations if not isinstance(o, Insert)), None)
            raise PreconditionFailedError(
                op.table if op else "commit",
                op.id if op else None,
                op.expected if op else {},
            )
        return self._rows(response)
