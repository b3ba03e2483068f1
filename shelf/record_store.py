"""
Record store using SQLite.

Local backend for the catalog. Every logical table (staging extractions,
todos, bugs, sessions, purge requests, ...) lives in one SQLite table as
JSON documents keyed by (table, id). Filters are evaluated with
``json_extract`` so any column, including members of the ``metadata`` bag,
can be queried without a per-table schema.

The store is the only shared mutable resource. Each call is its own
transaction; nothing here spans multiple calls.
"""

import json
import logging
import re
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Any, Optional, Sequence

from .errors import StoreError, StoreTimeout
from .protocol import Cond, Filters
from .types import utc_now

logger = logging.getLogger(__name__)

# Column names: identifiers, optionally dotted into JSON members
_COLUMN_RE = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*)*$')

_SQL_OPS = {"lt": "<", "lte": "<=", "gt": ">", "gte": ">=", "neq": "!="}

# Stay well below SQLite's host-parameter limit
_DELETE_CHUNK = 500

DEFAULT_CALL_TIMEOUT = 10.0


def _json_path(column: str) -> str:
    if not _COLUMN_RE.match(column):
        raise ValueError(f"Invalid column name: {column!r}")
    return "$." + column


def _sql_value(value: Any) -> Any:
    """Convert a Python filter value to what json_extract yields."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return value


class RecordStore:
    """
    SQLite-backed implementation of StoreProtocol.

    Rows are returned as plain dicts. ``id``, ``created_at`` and
    ``updated_at`` are filled in on insert when the payload lacks them.
    """

    def __init__(self, db_path: Path, *, call_timeout: float = DEFAULT_CALL_TIMEOUT):
        """
        Args:
            db_path: Path to SQLite database file
            call_timeout: Seconds to wait on a locked database before
                failing the call with StoreTimeout
        """
        self._db_path = db_path
        self._call_timeout = call_timeout
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=self._call_timeout,
        )
        self._conn.row_factory = sqlite3.Row

        # WAL for concurrent readers across processes
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(f"PRAGMA busy_timeout={int(self._call_timeout * 1000)}")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS records (
                tbl TEXT NOT NULL,
                id TEXT NOT NULL,
                data_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (tbl, id)
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_records_created
            ON records(tbl, created_at)
        """)
        self._conn.commit()

    # -------------------------------------------------------------------------
    # Query building
    # -------------------------------------------------------------------------

    def _where(self, table: str, filters: Optional[Filters]) -> tuple[str, list[Any]]:
        clauses = ["tbl = ?"]
        params: list[Any] = [table]

        for column, value in (filters or {}).items():
            if column == "id":
                expr = "id"
            else:
                expr = "json_extract(data_json, ?)"
                params.append(_json_path(column))

            if value is None:
                clauses.append(f"{expr} IS NULL")
            elif isinstance(value, Cond):
                if value.op == "ilike":
                    clauses.append(f"LOWER({expr}) LIKE LOWER(?) ESCAPE '\\'")
                    params.append(value.value)
                elif value.op == "neq":
                    # SQL != never matches NULL; treat missing as "not equal"
                    clauses.append(f"({expr} IS NULL OR {expr} != ?)")
                    if column != "id":
                        params.append(_json_path(column))
                    params.append(_sql_value(value.value))
                elif value.op in _SQL_OPS:
                    clauses.append(f"{expr} {_SQL_OPS[value.op]} ?")
                    params.append(_sql_value(value.value))
                else:
                    raise ValueError(f"Unsupported filter operator: {value.op!r}")
            elif isinstance(value, (list, tuple, set, frozenset)):
                values = list(value)
                if not values:
                    if column != "id":
                        params.pop()
                    clauses.append("0")
                    continue
                placeholders = ",".join("?" * len(values))
                clauses.append(f"{expr} IN ({placeholders})")
                params.extend(_sql_value(v) for v in values)
            else:
                clauses.append(f"{expr} = ?")
                params.append(_sql_value(value))

        return " AND ".join(clauses), params

    def _execute(self, sql: str, params: Sequence[Any] = (), *, table: str = ""):
        try:
            return self._conn.execute(sql, params)
        except sqlite3.OperationalError as e:
            if "locked" in str(e) or "busy" in str(e):
                raise StoreTimeout(f"{table or 'store'}: {e}", table=table) from e
            raise StoreError(f"{table or 'store'}: {e}", table=table) from e
        except sqlite3.Error as e:
            raise StoreError(f"{table or 'store'}: {e}", table=table) from e

    @staticmethod
    def _project(row: dict[str, Any], columns: Optional[Sequence[str]]) -> dict[str, Any]:
        if not columns:
            return row
        return {c: row.get(c) for c in columns}

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def select(
        self,
        table: str,
        filters: Optional[Filters] = None,
        *,
        columns: Optional[Sequence[str]] = None,
        order: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Select rows from a table.

        Args:
            table: Logical table name
            filters: Column conditions (see protocol module)
            columns: Columns to return (None for whole rows)
            order: Column to sort by; ties keep insertion order
            descending: Sort direction
            limit: Maximum rows (None for all)

        Returns:
            List of row dicts
        """
        where, params = self._where(table, filters)
        direction = "DESC" if descending else "ASC"
        sql = f"SELECT data_json FROM records WHERE {where}"
        if order:
            sql += f" ORDER BY json_extract(data_json, ?) {direction}, rowid {direction}"
            params.append(_json_path(order))
        else:
            sql += f" ORDER BY rowid {direction}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self._lock:
            cursor = self._execute(sql, params, table=table)
            rows = [json.loads(row["data_json"]) for row in cursor.fetchall()]
        return [self._project(row, columns) for row in rows]

    def get(self, table: str, id: str) -> Optional[dict[str, Any]]:
        """Get a row by id, or None."""
        with self._lock:
            cursor = self._execute(
                "SELECT data_json FROM records WHERE tbl = ? AND id = ?",
                (table, id), table=table,
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return json.loads(row["data_json"])

    def count(self, table: str, filters: Optional[Filters] = None) -> int:
        """Count rows matching filters."""
        where, params = self._where(table, filters)
        with self._lock:
            cursor = self._execute(
                f"SELECT COUNT(*) FROM records WHERE {where}", params, table=table,
            )
            return cursor.fetchone()[0]

    def list_tables(self) -> list[str]:
        """List logical table names that hold at least one row."""
        with self._lock:
            cursor = self._execute("SELECT DISTINCT tbl FROM records ORDER BY tbl")
            return [row["tbl"] for row in cursor]

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def insert(self, table: str, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Insert a row.

        Args:
            table: Logical table name
            payload: Column values; ``id`` is generated when absent

        Returns:
            The stored row

        Raises:
            StoreError: If the id already exists or the write fails
        """
        now = utc_now()
        row = dict(payload)
        row["id"] = str(row.get("id") or uuid.uuid4())
        row.setdefault("created_at", now)
        row.setdefault("updated_at", now)

        with self._lock:
            self._execute("""
                INSERT INTO records (tbl, id, data_json, created_at)
                VALUES (?, ?, ?, ?)
            """, (table, row["id"], json.dumps(row, ensure_ascii=False), row["created_at"]),
                table=table)
            self._conn.commit()
        return row

    def update(self, table: str, filters: Filters, payload: dict[str, Any]) -> int:
        """
        Merge payload into every row matching filters.

        Returns:
            Number of rows updated
        """
        if "id" in payload:
            raise ValueError("Row ids cannot be updated")
        where, params = self._where(table, filters)

        with self._lock:
            cursor = self._execute(
                f"SELECT id, data_json FROM records WHERE {where}", params, table=table,
            )
            rows = cursor.fetchall()
            updates = []
            for row in rows:
                data = json.loads(row["data_json"])
                data.update(payload)
                updates.append((
                    json.dumps(data, ensure_ascii=False),
                    data.get("created_at") or "",
                    table,
                    row["id"],
                ))
            if updates:
                try:
                    self._conn.executemany("""
                        UPDATE records SET data_json = ?, created_at = ?
                        WHERE tbl = ? AND id = ?
                    """, updates)
                    self._conn.commit()
                except sqlite3.Error as e:
                    self._conn.rollback()
                    raise StoreError(f"{table}: {e}", table=table) from e
        return len(updates)

    def delete(self, table: str, ids: Sequence[str]) -> int:
        """
        Delete rows by id.

        Returns:
            Number of rows deleted
        """
        ids = list(ids)
        deleted = 0
        with self._lock:
            for start in range(0, len(ids), _DELETE_CHUNK):
                chunk = ids[start:start + _DELETE_CHUNK]
                placeholders = ",".join("?" * len(chunk))
                cursor = self._execute(
                    f"DELETE FROM records WHERE tbl = ? AND id IN ({placeholders})",
                    (table, *chunk), table=table,
                )
                deleted += cursor.rowcount
            self._conn.commit()
        if deleted:
            logger.info("Deleted %d rows from %s", deleted, table)
        return deleted

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
