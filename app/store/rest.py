from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional

import httpx

from app.log import get_logger, log_event

from .base import ChangeStream, Filters, RecordStore, RecordStoreError, split_filter
from .memory import PRIMARY_KEYS

logger = get_logger("store.rest")


def _encode_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def filter_params(filters: Optional[Filters]) -> Dict[str, str]:
    params: Dict[str, str] = {}
    for col, raw in (filters or {}).items():
        op, value = split_filter(raw)
        if value is None and op in ("eq", "neq"):
            params[col] = "is.null" if op == "eq" else "not.is.null"
        else:
            params[col] = f"{op}.{_encode_value(value)}"
    return params


class RestRecordStore(RecordStore):
    """PostgREST-backed store (the hosted database's REST endpoint).

    Reads: GET {base}/rest/v1/{table}?col=eq.value&order=col.asc&limit=&offset=
    Writes: POST {base}/rest/v1/{table} with Prefer: return=representation
    """

    store_name = "rest"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        poll_interval: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url:
            raise RecordStoreError("SUPABASE_URL is required for the rest record store")
        self._base = base_url.rstrip("/") + "/rest/v1"
        self._api_key = api_key
        self._timeout = timeout
        self.poll_interval = poll_interval
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _call(self, method: str, table: str, *, params: Optional[Dict[str, str]] = None,
                    json: Any = None, prefer: Optional[str] = None) -> Any:
        url = f"{self._base}/{table}"
        try:
            resp = await self._client.request(method, url, params=params, json=json, headers=self._headers(prefer))
        except httpx.TransportError as e:
            raise RecordStoreError(f"{method} {table} failed: {type(e).__name__}: {e}") from e
        if resp.status_code >= 400:
            log_event(
                logger,
                "store_http_error",
                logging.WARNING,
                method=method,
                table=table,
                status=resp.status_code,
                body=resp.text[:512],
            )
            raise RecordStoreError(f"{method} {table} returned {resp.status_code}: {resp.text[:256]}")
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise RecordStoreError(f"{method} {table} returned a non-JSON body") from e

    @staticmethod
    def _first_row(data: Any, table: str) -> Dict[str, Any]:
        if isinstance(data, list) and data and isinstance(data[0], dict):
            return data[0]
        if isinstance(data, dict):
            return data
        raise RecordStoreError(f"write to {table} returned no representation")

    async def insert(self, table: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        data = await self._call("POST", table, json=dict(record), prefer="return=representation")
        return self._first_row(data, table)

    async def upsert(self, table: str, record: Mapping[str, Any], on_conflict: str) -> Dict[str, Any]:
        data = await self._call(
            "POST",
            table,
            params={"on_conflict": on_conflict},
            json=dict(record),
            prefer="resolution=merge-duplicates,return=representation",
        )
        return self._first_row(data, table)

    async def select(
        self,
        table: str,
        filters: Optional[Filters] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        params = {"select": "*", **filter_params(filters)}
        if order_by:
            params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"
        if limit is not None:
            params["limit"] = str(int(limit))
        if offset:
            params["offset"] = str(int(offset))
        data = await self._call("GET", table, params=params)
        if data is None:
            return []
        if not isinstance(data, list):
            raise RecordStoreError(f"select from {table} returned {type(data).__name__}, expected list")
        return [r for r in data if isinstance(r, dict)]

    async def subscribe_to_inserts(self, table: str, filters: Optional[Filters] = None) -> "PollingChangeStream":
        pk = PRIMARY_KEYS.get(table, "id")
        latest = await self.select(table, filters=filters, order_by=pk, descending=True, limit=1)
        cursor = latest[0].get(pk) if latest else None
        return PollingChangeStream(self, table, pk, filters, cursor, self.poll_interval)

    async def aclose(self) -> None:
        await self._client.aclose()


class PollingChangeStream(ChangeStream):
    """Insert feed built from periodic `pk > cursor` reads.

    Requires monotonically increasing primary keys.
    """

    def __init__(self, store: RestRecordStore, table: str, pk: str, filters: Optional[Filters],
                 cursor: Any, poll_interval: float):
        self._store = store
        self.table = table
        self._pk = pk
        self._filters = dict(filters or {})
        self._cursor = cursor
        self._interval = poll_interval
        self._buffer: List[Dict[str, Any]] = []
        self._closed = asyncio.Event()

    async def _poll(self) -> None:
        filters = dict(self._filters)
        if self._cursor is not None:
            filters[self._pk] = ("gt", self._cursor)
        rows = await self._store.select(self.table, filters=filters, order_by=self._pk)
        if rows:
            self._cursor = rows[-1].get(self._pk, self._cursor)
            self._buffer.extend(rows)

    async def __anext__(self) -> Dict[str, Any]:
        while not self._buffer:
            if self._closed.is_set():
                raise StopAsyncIteration
            try:
                await self._poll()
            except RecordStoreError as e:
                log_event(logger, "store_poll_error", logging.WARNING, table=self.table, error=str(e)[:256])
            if self._buffer:
                break
            try:
                await asyncio.wait_for(self._closed.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
        return self._buffer.pop(0)

    async def aclose(self) -> None:
        self._closed.set()
        self._buffer.clear()
