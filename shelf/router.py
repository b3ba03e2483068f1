"""
Extraction router: files pending staging items into destination tables.

Each staging row moves once, pending -> processed | duplicate | error:

1. bucket lookup (unknown bucket -> error, stage ``bucket_lookup``)
2. payload build for the bucket's destination table
3. duplicate check (content hash; title/content prefix for legacy callers)
4. insert (failure -> error, stage ``insert``)

Rows are read with ``status = pending`` and marked with a conditional
update on the same status, so re-running a batch never touches a row that
has already been decided. Errors are appended to the row's
``metadata.errors`` audit list; earlier entries are kept.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from .buckets import BucketRoute, lookup_route
from .errors import StoreError, UnknownBucketError
from .projects import ProjectDetector
from .protocol import StoreProtocol, prefix
from .scheduler import STALE_CYCLE_SECONDS, CycleGuard
from .types import (
    CONVENTIONS, JOURNAL, SNIPPETS, STAGING_DUPLICATE, STAGING_ERROR,
    STAGING_PENDING, STAGING_PROCESSED, STAGING_TABLE, StagingExtraction,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50
DEFAULT_DEDUP_WINDOW = 100
ERROR_MESSAGE_LENGTH = 500

STAGE_BUCKET_LOOKUP = "bucket_lookup"
STAGE_INSERT = "insert"
STAGE_PROCESSING = "processing"
STAGE_GARBAGE = "garbage_filter"


# -----------------------------------------------------------------------------
# Duplicate checks
# -----------------------------------------------------------------------------

@dataclass
class DedupResult:
    """Outcome of a duplicate check; ``error`` is set when the check itself failed."""
    is_duplicate: bool = False
    error: Optional[str] = None


def check_hash_duplicate(
    store: StoreProtocol,
    table: str,
    content_hash: str,
    window: int = DEFAULT_DEDUP_WINDOW,
) -> DedupResult:
    """
    Look for ``content_hash`` among the newest ``window`` rows of a table.

    A bounded linear scan of ``metadata.hash``, not an indexed lookup.
    Never raises; a failed query is reported through ``error``.
    """
    if not content_hash:
        return DedupResult()
    try:
        rows = store.select(
            table, columns=["id", "metadata"],
            order="created_at", descending=True, limit=window,
        )
    except StoreError as e:
        return DedupResult(error=str(e))
    return DedupResult(is_duplicate=any(
        (row.get("metadata") or {}).get("hash") == content_hash for row in rows
    ))


# Column and prefix length compared per table; title/100 for the rest
PREFIX_FIELDS: dict[str, tuple[str, int]] = {
    JOURNAL: ("content", 150),
    SNIPPETS: ("content", 150),
    CONVENTIONS: ("name", 100),
}


def check_prefix_duplicate(store: StoreProtocol, table: str, payload: dict[str, Any]) -> DedupResult:
    """
    Look for an existing row whose title (or name/content) starts the same way.

    Case-insensitive prefix match, scoped to the payload's project when it
    has one. Never raises.
    """
    column, length = PREFIX_FIELDS.get(table, ("title", 100))
    value = payload.get(column)
    if not value:
        return DedupResult()
    filters: dict[str, Any] = {column: prefix(value[:length])}
    if payload.get("project_id"):
        filters["project_id"] = payload["project_id"]
    try:
        rows = store.select(table, filters, columns=["id"], limit=1)
    except StoreError as e:
        return DedupResult(error=str(e))
    return DedupResult(is_duplicate=bool(rows))


# -----------------------------------------------------------------------------
# Router
# -----------------------------------------------------------------------------

@dataclass
class RouterStats:
    processed: int = 0
    duplicates: int = 0
    errors: int = 0
    by_table: dict[str, int] = field(default_factory=dict)
    skipped: bool = False

    @property
    def total(self) -> int:
        return self.processed + self.duplicates + self.errors

    def to_dict(self) -> dict[str, Any]:
        if self.skipped:
            return {"skipped": True}
        return {
            "processed": self.processed,
            "duplicates": self.duplicates,
            "errors": self.errors,
            "by_table": dict(self.by_table),
        }


@dataclass
class RouteOutcome:
    """The terminal status decided for one staging row."""
    status: str
    table: Optional[str] = None
    stage: Optional[str] = None
    error: Optional[str] = None


class ExtractionRouter:
    """Moves pending staging extractions into their destination tables."""

    def __init__(
        self,
        store: StoreProtocol,
        *,
        dedup_window: int = DEFAULT_DEDUP_WINDOW,
        prefix_fallback: bool = False,
        source: str = "extractor",
        guard: Optional[CycleGuard] = None,
    ):
        self._store = store
        self.dedup_window = dedup_window
        self.prefix_fallback = prefix_fallback
        self.source = source
        self.guard = guard or CycleGuard(type(self).__name__, STALE_CYCLE_SECONDS)

    def process_batch(self, limit: int = DEFAULT_BATCH_SIZE) -> RouterStats:
        """
        Route up to ``limit`` pending rows, oldest first.

        Returns ``RouterStats(skipped=True)`` without doing anything when a
        cycle is already running.
        """
        with self.guard.cycle() as acquired:
            if not acquired:
                logger.info("Router cycle already running, skipping")
                return RouterStats(skipped=True)
            return self._process(limit)

    def _process(self, limit: int) -> RouterStats:
        stats = RouterStats()
        try:
            rows = self._store.select(
                STAGING_TABLE, {"status": STAGING_PENDING},
                order="created_at", limit=limit,
            )
        except StoreError as e:
            logger.error("Fetching pending extractions failed: %s", e)
            return stats
        if not rows:
            return stats

        logger.info("Routing %d pending extractions", len(rows))
        for row in rows:
            extraction = StagingExtraction.from_row(row)
            try:
                outcome = self.route(extraction)
            except Exception as e:
                logger.error("Routing %s failed: %s", extraction.id, e, exc_info=True)
                outcome = RouteOutcome(STAGING_ERROR, stage=STAGE_PROCESSING, error=str(e))

            try:
                marked = self._mark(extraction, outcome)
            except StoreError as e:
                logger.error("Marking %s as %s failed: %s", extraction.id, outcome.status, e)
                stats.errors += 1
                continue
            if not marked:
                logger.info("Extraction %s was already handled by another cycle", extraction.id)
                continue

            if outcome.status == STAGING_PROCESSED:
                stats.processed += 1
                stats.by_table[outcome.table] = stats.by_table.get(outcome.table, 0) + 1
            elif outcome.status == STAGING_DUPLICATE:
                stats.duplicates += 1
            else:
                stats.errors += 1

        if stats.total:
            logger.info(
                "Router cycle complete: %d processed, %d duplicates, %d errors %s",
                stats.processed, stats.duplicates, stats.errors, stats.by_table,
            )
        return stats

    def route(self, extraction: StagingExtraction) -> RouteOutcome:
        """Decide and perform the filing of one extraction (without marking it)."""
        try:
            route = lookup_route(extraction.bucket)
        except UnknownBucketError as e:
            logger.warning("Extraction %s: %s", extraction.id, e)
            return RouteOutcome(STAGING_ERROR, stage=STAGE_BUCKET_LOOKUP, error=str(e))

        payload = self.build_payload(extraction, route)

        if self._is_duplicate(route.table, extraction, payload):
            logger.debug("Extraction %s is a duplicate in %s", extraction.id, route.table)
            return RouteOutcome(STAGING_DUPLICATE, table=route.table)

        try:
            self._store.insert(route.table, payload)
        except StoreError as e:
            logger.warning("Insert into %s failed for %s: %s", route.table, extraction.id, e)
            return RouteOutcome(STAGING_ERROR, table=route.table, stage=STAGE_INSERT, error=str(e))
        return RouteOutcome(STAGING_PROCESSED, table=route.table)

    def build_payload(self, extraction: StagingExtraction, route: BucketRoute) -> dict[str, Any]:
        metadata = {
            **extraction.metadata,
            "hash": extraction.content_hash,
            "source": self.source,
            "staging_id": extraction.id,
        }
        return route.builder(extraction, route.status, metadata)

    def _is_duplicate(self, table: str, extraction: StagingExtraction,
                      payload: dict[str, Any]) -> bool:
        # A failed check counts as "not a duplicate": a possible duplicate
        # row is preferred over a lost extraction.
        if extraction.content_hash:
            result = check_hash_duplicate(
                self._store, table, extraction.content_hash, self.dedup_window,
            )
        elif self.prefix_fallback:
            result = check_prefix_duplicate(self._store, table, payload)
        else:
            return False
        if result.error:
            logger.warning(
                "Duplicate check on %s failed for %s, filing anyway: %s",
                table, extraction.id, result.error,
            )
            return False
        return result.is_duplicate

    def _mark(self, extraction: StagingExtraction, outcome: RouteOutcome) -> bool:
        now = utc_now()
        update: dict[str, Any] = {"status": outcome.status, "updated_at": now}
        if outcome.status == STAGING_ERROR:
            update["metadata"] = self._audit_metadata(extraction, outcome, now)
        changed = self._store.update(
            STAGING_TABLE, {"id": extraction.id, "status": STAGING_PENDING}, update,
        )
        return changed == 1

    def _audit_metadata(self, extraction: StagingExtraction, outcome: RouteOutcome,
                        now: str) -> dict[str, Any]:
        try:
            current = self._store.get(STAGING_TABLE, extraction.id)
        except StoreError:
            current = None
        metadata = dict((current or {}).get("metadata") or extraction.metadata)
        entry = {
            "error": (outcome.error or "")[:ERROR_MESSAGE_LENGTH],
            "error_stage": outcome.stage or "unknown",
            "error_table": outcome.table,
            "error_at": now,
        }
        metadata["errors"] = [*(metadata.get("errors") or []), entry]
        metadata.update(entry)
        return metadata


# -----------------------------------------------------------------------------
# Legacy router
# -----------------------------------------------------------------------------

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")

# Terminal output and UI noise that upstream occasionally extracts
GARBAGE_PATTERNS = [
    re.compile(r"^\|"),
    re.compile(r"^\(\d+\)"),
    re.compile(r"^- MMO"),
    re.compile(r"^be saved by"),
    re.compile(r"^GET\s+/api"),
    re.compile(r"\[.*m$"),
    re.compile(r"^'\w+_ai"),
    re.compile(r"\\x1B"),
    re.compile(r"\\u001b", re.IGNORECASE),
]

MIN_CONTENT_LENGTH = 10
MAX_CONTENT_LENGTH = 5000


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def is_garbage(text: str) -> bool:
    """Content too short, too long, or matching a known noise pattern."""
    if not text or len(text) < MIN_CONTENT_LENGTH or len(text) > MAX_CONTENT_LENGTH:
        return True
    return any(p.search(text) for p in GARBAGE_PATTERNS)


class LegacyRouter(ExtractionRouter):
    """
    Router for extractions that arrive without a content hash.

    Strips terminal escapes, rejects noise, detects the project from the
    content when a detector is given, and falls back to prefix matching
    for duplicate checks.
    """

    def __init__(
        self,
        store: StoreProtocol,
        *,
        detector: Optional[ProjectDetector] = None,
        dedup_window: int = DEFAULT_DEDUP_WINDOW,
        source: str = "extractor",
        guard: Optional[CycleGuard] = None,
    ):
        super().__init__(
            store, dedup_window=dedup_window, prefix_fallback=True,
            source=source, guard=guard,
        )
        self._detector = detector

    def route(self, extraction: StagingExtraction) -> RouteOutcome:
        extraction.content = strip_ansi(extraction.content)
        if is_garbage(extraction.content):
            return RouteOutcome(
                STAGING_ERROR, stage=STAGE_GARBAGE,
                error="Content rejected by garbage filter",
            )
        return super().route(extraction)

    def build_payload(self, extraction: StagingExtraction, route: BucketRoute) -> dict[str, Any]:
        payload = super().build_payload(extraction, route)
        if self._detector is not None:
            detected = self._detector.detect(extraction.content, fallback=extraction.project_id)
            if detected.project is not None:
                payload["project_id"] = detected.project_id
                payload["client_id"] = detected.client_id
                payload["metadata"]["detection"] = {
                    "confidence": round(detected.confidence, 2),
                    "reason": detected.reason,
                }
        return payload
