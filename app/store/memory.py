from __future__ import annotations

import asyncio
import copy
import itertools
from typing import Any, Dict, List, Mapping, Optional

from .base import ChangeStream, Filters, RecordStore, RecordStoreError, matches

PRIMARY_KEYS: Dict[str, str] = {
    "chatsessions": "session_id",
    "chatmessages": "message_id",
}

_CLOSED = object()


class MemoryChangeStream(ChangeStream):
    def __init__(self, store: "MemoryRecordStore", table: str, filters: Optional[Filters]):
        self._store = store
        self.table = table
        self.filters = dict(filters or {})
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self.closed = False

    def offer(self, record: Dict[str, Any]) -> None:
        if not self.closed and matches(record, self.filters):
            self._queue.put_nowait(copy.deepcopy(record))

    async def __anext__(self) -> Dict[str, Any]:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._store._detach(self)
        self._queue.put_nowait(_CLOSED)


class MemoryRecordStore(RecordStore):
    """In-process store with integer keys and an insert change feed.

    Streams opened without filters see every insert on the table, like a
    shared realtime channel.
    """

    store_name = "memory"

    def __init__(self) -> None:
        self._tables: Dict[str, List[Dict[str, Any]]] = {}
        self._ids: Dict[str, itertools.count] = {}
        self._streams: Dict[str, List[MemoryChangeStream]] = {}
        self._lock = asyncio.Lock()

    def _pk(self, table: str) -> str:
        return PRIMARY_KEYS.get(table, "id")

    def _next_id(self, table: str) -> int:
        if table not in self._ids:
            self._ids[table] = itertools.count(1)
        return next(self._ids[table])

    async def insert(self, table: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            row = copy.deepcopy(dict(record))
            pk = self._pk(table)
            rows = self._tables.setdefault(table, [])
            if row.get(pk) is None:
                row[pk] = self._next_id(table)
            elif any(r.get(pk) == row[pk] for r in rows):
                raise RecordStoreError(f"duplicate key {pk}={row[pk]!r} in {table}")
            rows.append(row)
            for stream in list(self._streams.get(table, [])):
                stream.offer(row)
            return copy.deepcopy(row)

    async def upsert(self, table: str, record: Mapping[str, Any], on_conflict: str) -> Dict[str, Any]:
        async with self._lock:
            rows = self._tables.setdefault(table, [])
            key = record.get(on_conflict)
            for existing in rows:
                if key is not None and existing.get(on_conflict) == key:
                    existing.update(copy.deepcopy(dict(record)))
                    return copy.deepcopy(existing)
        # Upserts of new rows behave like inserts, change feed included
        return await self.insert(table, record)

    async def select(
        self,
        table: str,
        filters: Optional[Filters] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        rows = [r for r in self._tables.get(table, []) if matches(r, filters)]
        pk = self._pk(table)
        if order_by:
            rows.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by) or "", r.get(pk) or 0), reverse=descending)
        offset = max(0, int(offset or 0))
        end = None if limit is None else offset + max(0, int(limit))
        return copy.deepcopy(rows[offset:end])

    async def subscribe_to_inserts(self, table: str, filters: Optional[Filters] = None) -> MemoryChangeStream:
        stream = MemoryChangeStream(self, table, filters)
        self._streams.setdefault(table, []).append(stream)
        return stream

    def _detach(self, stream: MemoryChangeStream) -> None:
        streams = self._streams.get(stream.table, [])
        if stream in streams:
            streams.remove(stream)

    async def aclose(self) -> None:
        for streams in list(self._streams.values()):
            for s in list(streams):
                await s.aclose()
