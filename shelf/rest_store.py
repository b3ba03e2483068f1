"""
HTTP backend for a PostgREST-compatible API (e.g. Supabase).

Implements the same StoreProtocol as the local RecordStore by translating
filters into PostgREST query operators:

    {"status": "pending"}           status=eq.pending
    {"status": ["open", "fixed"]}   status=in.("open","fixed")
    {"phase_id": None}              phase_id=is.null
    {"created_at": lt(ts)}          created_at=lt.<ts>
    {"title": prefix("fix")}        title=ilike.fix*
    {"metadata.hash": "abc"}        metadata->>hash=eq.abc
"""

import logging
import re
from typing import Any, Optional, Sequence

import httpx

from .errors import StoreError, StoreTimeout
from .protocol import Cond, Filters

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

# Keep id lists in a single request URL comfortably short
_DELETE_CHUNK = 200

_CONTENT_RANGE_RE = re.compile(r'/(\d+)$')


def _column(name: str) -> str:
    """Map a dotted column to PostgREST JSON-member syntax."""
    if "." not in name:
        return name
    head, *rest = name.split(".")
    path = head
    for part in rest[:-1]:
        path += f"->{part}"
    return f"{path}->>{rest[-1]}"


def _literal(value: Any) -> str:
    if value is True:
        return "true"
    if value is False:
        return "false"
    return str(value)


def _list_literal(values: Sequence[Any]) -> str:
    quoted = []
    for v in values:
        text = _literal(v).replace("\\", "\\\\").replace('"', '\\"')
        quoted.append(f'"{text}"')
    return "(" + ",".join(quoted) + ")"


def _like_pattern(pattern: str) -> str:
    # PostgREST uses * as the wildcard in URLs; escaped literals stay escaped
    out = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\" and i + 1 < len(pattern):
            out.append(pattern[i:i + 2])
            i += 2
            continue
        out.append("*" if ch == "%" else ch)
        i += 1
    return "".join(out)


def build_params(filters: Optional[Filters]) -> list[tuple[str, str]]:
    """Translate a filter dict to PostgREST query parameters."""
    params: list[tuple[str, str]] = []
    for column, value in (filters or {}).items():
        key = _column(column)
        if value is None:
            params.append((key, "is.null"))
        elif isinstance(value, Cond):
            if value.op == "ilike":
                params.append((key, f"ilike.{_like_pattern(value.value)}"))
            else:
                params.append((key, f"{value.op}.{_literal(value.value)}"))
        elif isinstance(value, (list, tuple, set, frozenset)):
            params.append((key, f"in.{_list_literal(list(value))}"))
        else:
            params.append((key, f"eq.{_literal(value)}"))
    return params


class RestStore:
    """PostgREST client implementing StoreProtocol."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._api_url = api_url.rstrip("/")

        # Refuse non-HTTPS for remote APIs (service key would be sent in cleartext)
        if not self._api_url.startswith("https://"):
            from urllib.parse import urlparse
            host = urlparse(self._api_url).hostname or ""
            if host not in ("localhost", "127.0.0.1", "::1"):
                raise ValueError(
                    f"Store API URL must use HTTPS (got {self._api_url}). "
                    "Use HTTPS to protect API credentials, or use localhost for local development."
                )

        headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        self._client = httpx.Client(
            base_url=f"{self._api_url}/rest/v1",
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def _request(self, method: str, table: str, **kwargs) -> httpx.Response:
        try:
            resp = self._client.request(method, f"/{table}", **kwargs)
            resp.raise_for_status()
            return resp
        except httpx.TimeoutException as e:
            raise StoreTimeout(f"{table}: request timed out", table=table) from e
        except httpx.HTTPStatusError as e:
            raise StoreError(f"{table}: {self._error_message(e.response)}", table=table) from e
        except httpx.HTTPError as e:
            raise StoreError(f"{table}: {e}", table=table) from e

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return f"HTTP {resp.status_code}"
        if isinstance(body, dict):
            return body.get("message") or body.get("error") or f"HTTP {resp.status_code}"
        return f"HTTP {resp.status_code}"

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
        params = [("select", ",".join(columns) if columns else "*")]
        params.extend(build_params(filters))
        if order:
            params.append(("order", f"{_column(order)}.{'desc' if descending else 'asc'}"))
        if limit is not None:
            params.append(("limit", str(limit)))
        return self._request("GET", table, params=params).json()

    def get(self, table: str, id: str) -> Optional[dict[str, Any]]:
        rows = self.select(table, {"id": id}, limit=1)
        return rows[0] if rows else None

    def count(self, table: str, filters: Optional[Filters] = None) -> int:
        params = [("select", "id")]
        params.extend(build_params(filters))
        resp = self._request(
            "HEAD", table, params=params, headers={"Prefer": "count=exact"},
        )
        match = _CONTENT_RANGE_RE.search(resp.headers.get("content-range", ""))
        return int(match.group(1)) if match else 0

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def insert(self, table: str, payload: dict[str, Any]) -> dict[str, Any]:
        resp = self._request(
            "POST", table, json=payload,
            headers={"Prefer": "return=representation"},
        )
        rows = resp.json()
        return rows[0] if rows else dict(payload)

    def update(self, table: str, filters: Filters, payload: dict[str, Any]) -> int:
        if not filters:
            raise ValueError("Refusing to update without filters")
        resp = self._request(
            "PATCH", table, params=build_params(filters), json=payload,
            headers={"Prefer": "return=representation"},
        )
        return len(resp.json())

    def delete(self, table: str, ids: Sequence[str]) -> int:
        ids = list(ids)
        deleted = 0
        for start in range(0, len(ids), _DELETE_CHUNK):
            chunk = ids[start:start + _DELETE_CHUNK]
            resp = self._request(
                "DELETE", table, params=build_params({"id": chunk}),
                headers={"Prefer": "return=representation"},
            )
            deleted += len(resp.json())
        if deleted:
            logger.info("Deleted %d rows from %s", deleted, table)
        return deleted

    def close(self) -> None:
        self._client.close()
