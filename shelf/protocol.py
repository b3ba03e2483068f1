"""
Storage interface for the catalog.

Every pipeline stage talks to the store through this small relational
interface: select / get / insert / update / delete / count. Implemented by:
- RecordStore (local SQLite)
- RestStore (PostgREST-compatible HTTP API)

Filters are dicts mapping column -> condition:

    {"status": "pending"}                  equality
    {"status": ["open", "pending"]}        membership
    {"phase_id": None}                     IS NULL
    {"created_at": lt("2026-01-01T00:00:00")}
    {"title": prefix("fix login")}         case-insensitive prefix
    {"metadata.hash": "abc"}               JSON member

All conditions are ANDed.
"""

from typing import Any, NamedTuple, Optional, Protocol, Sequence, runtime_checkable


class Cond(NamedTuple):
    """A comparison condition for a filter value."""
    op: str  # "lt" | "lte" | "gt" | "gte" | "neq" | "ilike"
    value: Any


def lt(value: Any) -> Cond:
    return Cond("lt", value)


def lte(value: Any) -> Cond:
    return Cond("lte", value)


def gt(value: Any) -> Cond:
    return Cond("gt", value)


def gte(value: Any) -> Cond:
    return Cond("gte", value)


def neq(value: Any) -> Cond:
    return Cond("neq", value)


def ilike(pattern: str) -> Cond:
    """Case-insensitive LIKE; ``%`` matches any run of characters."""
    return Cond("ilike", pattern)


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def prefix(text: str) -> Cond:
    """Case-insensitive prefix match on a literal string."""
    return Cond("ilike", _escape_like(text) + "%")


def contains(text: str) -> Cond:
    """Case-insensitive substring match on a literal string."""
    return Cond("ilike", "%" + _escape_like(text) + "%")


Filters = dict[str, Any]


@runtime_checkable
class StoreProtocol(Protocol):
    """
    Minimal relational store.

    Each call is its own atomic unit; no transaction spans calls.
    Implementations raise StoreError (or StoreTimeout) on failure.
    """

    def select(
        self,
        table: str,
        filters: Optional[Filters] = None,
        *,
        columns: Optional[Sequence[str]] = None,
        order: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]: ...

    def get(self, table: str, id: str) -> Optional[dict[str, Any]]: ...

    def insert(self, table: str, payload: dict[str, Any]) -> dict[str, Any]: ...

    def update(
        self,
        table: str,
        filters: Filters,
        payload: dict[str, Any],
    ) -> int: ...

    def delete(self, table: str, ids: Sequence[str]) -> int: ...

    def count(self, table: str, filters: Optional[Filters] = None) -> int: ...

    def close(self) -> None: ...
