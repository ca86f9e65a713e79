from __future__ import annotations

import abc
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple

# Filters map a column to a value (equality) or to an (op, value) tuple.
Filters = Mapping[str, Any]

OPERATORS = ("eq", "neq", "gt", "gte", "lt", "lte")


class RecordStoreError(Exception):
    """A record store call failed (transport, HTTP status, or bad shape)."""


def split_filter(value: Any) -> Tuple[str, Any]:
    if isinstance(value, tuple) and len(value) == 2 and value[0] in OPERATORS:
        return value[0], value[1]
    return "eq", value


def matches(record: Mapping[str, Any], filters: Optional[Filters]) -> bool:
    for col, raw in (filters or {}).items():
        op, expected = split_filter(raw)
        actual = record.get(col)
        try:
            if op == "eq" and not _same(actual, expected):
                return False
            if op == "neq" and _same(actual, expected):
                return False
            if op == "gt" and not (actual is not None and actual > expected):
                return False
            if op == "gte" and not (actual is not None and actual >= expected):
                return False
            if op == "lt" and not (actual is not None and actual < expected):
                return False
            if op == "lte" and not (actual is not None and actual <= expected):
                return False
        except TypeError:
            return False
    return True


def _same(a: Any, b: Any) -> bool:
    # Identifiers may round-trip as str (JSON/REST) or int (memory); compare loosely
    return a == b or (a is not None and b is not None and str(a) == str(b))


class ChangeStream(abc.ABC):
    """Async iterator over records inserted into one table.

    Iteration ends once `aclose()` has been called.
    """

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        return self

    @abc.abstractmethod
    async def __anext__(self) -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    async def aclose(self) -> None:
        ...


class RecordStore(abc.ABC):
    """Record-oriented persistence with an insert change feed."""

    store_name: str = "unknown"

    @abc.abstractmethod
    async def insert(self, table: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        """Insert one record and return it as stored (with generated keys)."""

    @abc.abstractmethod
    async def upsert(self, table: str, record: Mapping[str, Any], on_conflict: str) -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    async def select(
        self,
        table: str,
        filters: Optional[Filters] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        ...

    @abc.abstractmethod
    async def subscribe_to_inserts(self, table: str, filters: Optional[Filters] = None) -> ChangeStream:
        ...

    async def aclose(self) -> None:
        return None
