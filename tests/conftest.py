"""
Shared pytest fixtures for shelf tests.

Provides a temporary SQLite store, a store wrapper that fails on demand,
and helpers for seeding rows with controlled timestamps.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import pytest

from shelf.errors import StoreError
from shelf.record_store import RecordStore
from shelf.types import format_utc


class FailingStore:
    """
    Store wrapper that raises StoreError on selected operations.

    ``fail["insert"] = {"todos"}`` makes inserts into todos fail;
    ``fail["select"] = ALL`` makes every select fail. Everything else is
    delegated to the real store.
    """

    ALL = object()

    def __init__(self, real_store):
        self._real = real_store
        self.fail: dict[str, Any] = {}
        self.calls: list[tuple[str, str]] = []

    def __getattr__(self, name):
        return getattr(self._real, name)

    def _check(self, op: str, table: str) -> None:
        self.calls.append((op, table))
        tables = self.fail.get(op)
        if tables is self.ALL or (tables and table in tables):
            raise StoreError(f"simulated {op} failure on {table}", table=table)

    def select(self, table, filters=None, **kwargs):
        self._check("select", table)
        return self._real.select(table, filters, **kwargs)

    def get(self, table, id):
        self._check("get", table)
        return self._real.get(table, id)

    def insert(self, table, payload):
        self._check("insert", table)
        return self._real.insert(table, payload)

    def update(self, table, filters, payload):
        self._check("update", table)
        return self._real.update(table, filters, payload)

    def delete(self, table, ids):
        self._check("delete", table)
        return self._real.delete(table, ids)

    def count(self, table, filters=None):
        self._check("count", table)
        return self._real.count(table, filters)


class InterleavingStore(FailingStore):
    """
    Store wrapper that runs ``before_update`` once, just before the first
    update to ``table``, to stand in for a concurrent writer.
    """

    def __init__(self, real_store, table: str, before_update):
        super().__init__(real_store)
        self._table = table
        self._before_update = before_update

    def update(self, table, filters, payload):
        if self._before_update and table == self._table:
            hook, self._before_update = self._before_update, None
            hook()
        return super().update(table, filters, payload)


def ago(*, hours: float = 0, days: float = 0, now: Optional[datetime] = None) -> str:
    """Canonical timestamp for a moment in the past."""
    now = now or datetime.now(timezone.utc)
    return format_utc(now - timedelta(hours=hours, days=days))


class Seeder:
    """Inserts rows with strictly increasing created_at values."""

    def __init__(self, store):
        self.store = store
        self._base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        self._n = 0

    def next_timestamp(self) -> str:
        self._n += 1
        return format_utc(self._base + timedelta(minutes=self._n))

    def add(self, table: str, **fields) -> dict:
        fields.setdefault("created_at", self.next_timestamp())
        return self.store.insert(table, fields)

    def staging(self, bucket: str, content: str = "", **fields) -> dict:
        fields.setdefault("status", "pending")
        fields.setdefault("metadata", {})
        return self.add("extractions", bucket=bucket, content=content, **fields)


@pytest.fixture
def store(tmp_path: Path):
    """A fresh RecordStore in a temporary directory."""
    s = RecordStore(tmp_path / "shelf.db")
    yield s
    s.close()


@pytest.fixture
def failing_store(store):
    return FailingStore(store)


@pytest.fixture
def seed(store):
    return Seeder(store)
