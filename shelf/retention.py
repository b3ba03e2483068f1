"""
Storage retention with an approval gate.

Scanning and flagging never delete anything. Flagging writes a pending
PurgeRequest that captures the exact ids to remove; only ``review`` with a
named approver deletes, and only those captured ids.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, Sequence

from .config import DEFAULT_RETENTION, RETENTION_EXEMPT
from .errors import PurgeError, StoreError
from .protocol import StoreProtocol, lt
from .types import (
    PURGE_APPROVED, PURGE_PENDING, PURGE_REJECTED, PURGE_REQUESTS_TABLE,
    PurgeRequest, cutoff_before, format_utc,
)

logger = logging.getLogger(__name__)

MAX_FLAGGED_IDS = 1000
DEFAULT_FLAG_TABLES = ("sessions", "messages", "knowledge")
FALLBACK_RETENTION_DAYS = 30


@dataclass
class TableUsage:
    total: int = 0
    stale: int = 0
    retention_days: Optional[int] = None
    error: Optional[str] = None


@dataclass
class StorageReport:
    tables: dict[str, TableUsage] = field(default_factory=dict)
    total_rows: int = 0
    total_stale: int = 0
    recommendations: list[dict[str, Any]] = field(default_factory=list)
    pending: list[PurgeRequest] = field(default_factory=list)

    @property
    def flagged(self) -> int:
        return len(self.pending)


class RetentionManager:
    """Reports stale rows, flags them for purge and executes approved purges."""

    def __init__(
        self,
        store: StoreProtocol,
        retention: Optional[dict[str, Optional[int]]] = None,
        *,
        flagged_by: str = "shelf",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._store = store
        self._retention = dict(DEFAULT_RETENTION if retention is None else retention)
        for table in RETENTION_EXEMPT:
            self._retention[table] = None
        self.flagged_by = flagged_by
        self._clock = clock

    @property
    def retention(self) -> dict[str, Optional[int]]:
        return dict(self._retention)

    def _cutoff(self, days: int) -> str:
        return cutoff_before(days=days, now=self._clock())

    # -------------------------------------------------------------------------
    # Read path
    # -------------------------------------------------------------------------

    def scan(self) -> StorageReport:
        """Count total and stale rows per monitored table. Never writes."""
        report = StorageReport()
        for table, days in self._retention.items():
            usage = TableUsage(retention_days=days)
            try:
                usage.total = self._store.count(table)
                if days:
                    usage.stale = self._store.count(
                        table, {"created_at": lt(self._cutoff(days))},
                    )
            except StoreError as e:
                logger.warning("Scanning %s failed: %s", table, e)
                usage.error = str(e)
            report.tables[table] = usage
            report.total_rows += usage.total
            report.total_stale += usage.stale
            if usage.stale:
                report.recommendations.append({
                    "table": table,
                    "action": "flag_for_purge",
                    "count": usage.stale,
                    "reason": f"{usage.stale} records older than {days} days",
                    "requires_approval": True,
                })

        try:
            report.pending = self.pending()
        except StoreError as e:
            logger.warning("Reading pending purge requests failed: %s", e)

        logger.info(
            "Storage scan: %d rows, %d stale, %d flagged, %d recommendations",
            report.total_rows, report.total_stale, report.flagged,
            len(report.recommendations),
        )
        return report

    def pending(self, project_id: Optional[str] = None) -> list[PurgeRequest]:
        """Pending purge requests, newest first."""
        filters: dict[str, Any] = {"status": PURGE_PENDING}
        if project_id:
            filters["project_id"] = project_id
        rows = self._store.select(PURGE_REQUESTS_TABLE, filters, order="created_at", descending=True)
        return [PurgeRequest.from_row(row) for row in rows]

    def history(self, limit: int = 50) -> list[PurgeRequest]:
        """Reviewed purge requests, newest first."""
        rows = self._store.select(
            PURGE_REQUESTS_TABLE, {"status": [PURGE_APPROVED, PURGE_REJECTED]},
            order="created_at", descending=True, limit=limit,
        )
        return [PurgeRequest.from_row(row) for row in rows]

    def oldest(self, table: str, limit: int = 10) -> list[dict[str, Any]]:
        """The oldest rows of a table, for manual review."""
        return self._store.select(
            table, columns=["id", "created_at"], order="created_at", limit=limit,
        )

    # -------------------------------------------------------------------------
    # Flag path
    # -------------------------------------------------------------------------

    def flag_for_purge(
        self,
        tables: Optional[Iterable[str]] = None,
        reason: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """
        Write one pending PurgeRequest per table that has stale rows.

        At most 1000 ids are captured per request; ``record_count`` is the
        full stale count. Exempt tables are skipped.

        Returns:
            One summary dict per request written
        """
        flagged = []
        for table in tables or DEFAULT_FLAG_TABLES:
            if table in RETENTION_EXEMPT:
                logger.info("Skipping %s: exempt from retention", table)
                continue
            days = self._retention.get(table, FALLBACK_RETENTION_DAYS)
            if days is None:
                logger.info("Skipping %s: retention disabled", table)
                continue
            cutoff = self._cutoff(days)
            stale = {"created_at": lt(cutoff)}
            rows = self._store.select(
                table, stale, columns=["id"], order="created_at", limit=MAX_FLAGGED_IDS,
            )
            if not rows:
                continue
            count = max(self._store.count(table, stale), len(rows))
            request = self._store.insert(PURGE_REQUESTS_TABLE, {
                "table_name": table,
                "record_count": count,
                "record_ids": [row["id"] for row in rows],
                "cutoff_date": cutoff,
                "reason": reason or f"Records older than {days} days",
                "project_id": project_id,
                "status": PURGE_PENDING,
                "flagged_by": self.flagged_by,
            })
            flagged.append({
                "table": table,
                "count": count,
                "request_id": request["id"],
                "status": "pending_approval",
            })
            logger.info("Flagged %d stale rows in %s for approval (%s)", count, table, request["id"])
        return flagged

    # -------------------------------------------------------------------------
    # Approval path
    # -------------------------------------------------------------------------

    def _current_status(self, request_id: str) -> str:
        row = self._store.get(PURGE_REQUESTS_TABLE, request_id)
        return row.get("status", "reviewed") if row else "removed"

    def _release_claim(self, request_id: str, dev_id: str) -> None:
        """Return an approved-but-unexecuted request to pending."""
        try:
            self._store.update(
                PURGE_REQUESTS_TABLE,
                {"id": request_id, "status": PURGE_APPROVED, "reviewed_by": dev_id,
                 "executed_at": None},
                {"status": PURGE_PENDING, "reviewed_by": None, "reviewed_at": None},
            )
        except StoreError as e:
            logger.error("Could not return purge request %s to pending: %s", request_id, e)

    def review(self, request_id: str, dev_id: str, approve: bool = True) -> dict[str, Any]:
        """
        Approve or reject a pending purge request.

        Approval first moves the request from pending to approved, then
        deletes exactly the ids captured when it was flagged. A reviewer who
        loses that transition to a concurrent review deletes nothing. This is
        the only code path that deletes rows.

        Raises:
            PurgeError: Missing request id or approver, unknown request,
                or a request that is no longer pending. Nothing is changed.
            StoreError: If the delete or the status update fails.
        """
        if not request_id:
            raise PurgeError("request_id is required")
        if not dev_id:
            raise PurgeError("dev_id is required - must know who is approving")

        row = self._store.get(PURGE_REQUESTS_TABLE, request_id)
        if row is None:
            raise PurgeError("Purge request not found")
        request = PurgeRequest.from_row(row)
        if request.status != PURGE_PENDING:
            raise PurgeError(f"Request already {request.status}")

        now = format_utc(self._clock())
        still_pending = {"id": request_id, "status": PURGE_PENDING}

        if not approve:
            claimed = self._store.update(PURGE_REQUESTS_TABLE, still_pending, {
                "status": PURGE_REJECTED,
                "reviewed_by": dev_id,
                "reviewed_at": now,
            })
            if claimed != 1:
                raise PurgeError(f"Request already {self._current_status(request_id)}")
            logger.info("Purge request %s rejected by %s", request_id, dev_id)
            return {"message": "Purge request rejected", "request_id": request_id}

        # The pending -> approved transition must win before anything is deleted
        claimed = self._store.update(PURGE_REQUESTS_TABLE, still_pending, {
            "status": PURGE_APPROVED,
            "reviewed_by": dev_id,
            "reviewed_at": now,
        })
        if claimed != 1:
            raise PurgeError(f"Request already {self._current_status(request_id)}")

        try:
            deleted = self._store.delete(request.table_name, request.record_ids)
        except StoreError:
            self._release_claim(request_id, dev_id)
            raise
        self._store.update(PURGE_REQUESTS_TABLE, {"id": request_id}, {
            "executed_at": now,
        })
        logger.info(
            "Purge %s approved by %s: deleted %d rows from %s",
            request_id, dev_id, deleted, request.table_name,
        )
        return {
            "message": "Purge approved and executed",
            "request_id": request_id,
            "table": request.table_name,
            "deleted": deleted,
            "approved_by": dev_id,
        }

    def bulk_review(
        self,
        request_ids: Sequence[str],
        dev_id: str,
        approve: bool = True,
    ) -> list[dict[str, Any]]:
        """
        Review several requests; one failure does not stop the rest.

        Returns:
            One outcome per id: approved, rejected, skipped or error
        """
        if not request_ids:
            raise PurgeError("request_ids are required")
        if not dev_id:
            raise PurgeError("dev_id is required - must know who is approving")

        results = []
        for request_id in request_ids:
            try:
                outcome = self.review(request_id, dev_id, approve)
            except PurgeError as e:
                results.append({"request_id": request_id, "status": "skipped", "reason": str(e)})
            except StoreError as e:
                logger.error("Reviewing purge request %s failed: %s", request_id, e)
                results.append({"request_id": request_id, "status": "error", "error": str(e)})
            else:
                entry = {"request_id": request_id,
                         "status": PURGE_APPROVED if approve else PURGE_REJECTED}
                if approve:
                    entry["deleted"] = outcome["deleted"]
                results.append(entry)
        logger.info("Bulk purge review by %s: %d requests", dev_id, len(results))
        return results
