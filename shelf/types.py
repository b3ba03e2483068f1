"""
Data types for the knowledge catalog.

Rows travel through the store as plain dicts. The dataclasses here give
the pipeline stages a typed view of the rows they care about; each has a
``from_row`` constructor that tolerates missing columns.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional


# -----------------------------------------------------------------------------
# Table names
# -----------------------------------------------------------------------------

STAGING_TABLE = "extractions"

TODOS = "todos"
BUGS = "bugs"
KNOWLEDGE = "knowledge"
DECISIONS = "decisions"
LESSONS = "lessons"
JOURNAL = "journal"
DOCS = "docs"
CONVENTIONS = "conventions"
SNIPPETS = "snippets"

DESTINATION_TABLES = (
    TODOS, BUGS, KNOWLEDGE, DECISIONS, LESSONS,
    JOURNAL, DOCS, CONVENTIONS, SNIPPETS,
)

SESSIONS_TABLE = "sessions"
SESSION_SUMMARIES_TABLE = "session_summaries"
PURGE_REQUESTS_TABLE = "purge_requests"
PROJECTS_TABLE = "projects"
PROJECT_PATHS_TABLE = "project_paths"
CLIENTS_TABLE = "clients"
PHASES_TABLE = "project_phases"
PHASE_ITEMS_TABLE = "phase_items"


# -----------------------------------------------------------------------------
# Status vocabularies
# -----------------------------------------------------------------------------

# Staging workflow: pending -> processed | duplicate | error
STAGING_PENDING = "pending"
STAGING_PROCESSED = "processed"
STAGING_DUPLICATE = "duplicate"
STAGING_ERROR = "error"
STAGING_TERMINAL = frozenset({STAGING_PROCESSED, STAGING_DUPLICATE, STAGING_ERROR})

CONSOLIDATED = "consolidated"

# Session lifecycle, strictly forward
SESSION_STATUSES = ("active", "processed", "extracted", "cleaned", "archived")
SESSION_EXTRACTED = "extracted"
SESSION_CLEANED = "cleaned"
SESSION_ARCHIVED = "archived"

PURGE_PENDING = "pending"
PURGE_APPROVED = "approved"
PURGE_REJECTED = "rejected"


# -----------------------------------------------------------------------------
# Timestamps
# -----------------------------------------------------------------------------

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"


def format_utc(dt: datetime) -> str:
    """Format a datetime as a canonical UTC timestamp (YYYY-MM-DDTHH:MM:SS).

    All timestamps are stored in this form so that string comparison
    matches chronological order.
    """
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime(_TIMESTAMP_FORMAT)


def utc_now() -> str:
    """Current UTC timestamp in canonical format."""
    return format_utc(datetime.now(timezone.utc))


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Handles the canonical format as well as values carrying microseconds,
    'Z', or '+00:00' suffixes (as returned by a Postgres backend).
    """
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def cutoff_before(*, hours: float = 0, days: float = 0,
                  now: Optional[datetime] = None) -> str:
    """Canonical timestamp for ``now - (days, hours)``."""
    now = now or datetime.now(timezone.utc)
    return format_utc(now - timedelta(days=days, hours=hours))


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------

@dataclass
class StagingExtraction:
    """A raw item produced by the upstream extraction stage."""
    id: str
    bucket: str
    content: str = ""
    title: Optional[str] = None
    project_id: Optional[str] = None
    session_id: Optional[str] = None
    priority: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    status: str = STAGING_PENDING
    category: Optional[str] = None
    hash: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def content_hash(self) -> Optional[str]:
        """Content hash from the hash column, falling back to metadata."""
        return self.hash or self.metadata.get("hash") or None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "StagingExtraction":
        return cls(
            id=row["id"],
            bucket=row.get("bucket") or "",
            content=row.get("content") or "",
            title=row.get("title"),
            project_id=row.get("project_id"),
            session_id=row.get("session_id"),
            priority=row.get("priority"),
            metadata=dict(row.get("metadata") or {}),
            status=row.get("status") or STAGING_PENDING,
            category=row.get("category"),
            hash=row.get("hash"),
            created_at=row.get("created_at") or "",
            updated_at=row.get("updated_at") or "",
        )


@dataclass
class DestinationRecord:
    """A filed knowledge item in one of the category tables."""
    id: str
    title: str
    status: str
    project_id: Optional[str] = None
    client_id: Optional[str] = None
    source_session_id: Optional[str] = None
    phase_id: Optional[str] = None
    consolidated_into: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "DestinationRecord":
        # Conventions carry 'name', snippets carry 'context' in place of a title
        title = row.get("title") or row.get("name") or row.get("context") or ""
        return cls(
            id=row["id"],
            title=title,
            status=row.get("status") or "",
            project_id=row.get("project_id"),
            client_id=row.get("client_id"),
            source_session_id=row.get("source_session_id"),
            phase_id=row.get("phase_id"),
            consolidated_into=row.get("consolidated_into"),
            metadata=dict(row.get("metadata") or {}),
            created_at=row.get("created_at") or "",
            updated_at=row.get("updated_at") or "",
        )


@dataclass
class PhaseItem:
    """An ordered work item inside a planning phase."""
    id: str
    title: str
    status: str = "pending"


@dataclass
class Phase:
    """A planning phase with the keyword set derived from its items."""
    id: str
    name: str
    phase_num: int = 0
    status: str = ""
    items: list[PhaseItem] = field(default_factory=list)
    keywords: set[str] = field(default_factory=set)


@dataclass
class PurgeRequest:
    """A proposed deletion awaiting (or past) human review."""
    id: str
    table_name: str
    record_ids: list[str]
    record_count: int
    status: str = PURGE_PENDING
    reason: str = ""
    cutoff_date: Optional[str] = None
    project_id: Optional[str] = None
    flagged_by: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[str] = None
    executed_at: Optional[str] = None
    created_at: str = ""

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "PurgeRequest":
        record_ids = list(row.get("record_ids") or [])
        return cls(
            id=row["id"],
            table_name=row["table_name"],
            record_ids=record_ids,
            record_count=row.get("record_count") or len(record_ids),
            status=row.get("status") or PURGE_PENDING,
            reason=row.get("reason") or "",
            cutoff_date=row.get("cutoff_date"),
            project_id=row.get("project_id"),
            flagged_by=row.get("flagged_by"),
            reviewed_by=row.get("reviewed_by"),
            reviewed_at=row.get("reviewed_at"),
            executed_at=row.get("executed_at"),
            created_at=row.get("created_at") or "",
        )


@dataclass
class SessionRecord:
    """A captured conversation moving through the archive lifecycle."""
    id: str
    status: str
    raw_content: str = ""
    project_id: Optional[str] = None
    started_at: Optional[str] = None
    semantic_extracted_at: Optional[str] = None
    created_at: str = ""

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "SessionRecord":
        return cls(
            id=row["id"],
            status=row.get("status") or "",
            raw_content=row.get("raw_content") or "",
            project_id=row.get("project_id"),
            started_at=row.get("started_at"),
            semantic_extracted_at=row.get("semantic_extracted_at"),
            created_at=row.get("created_at") or "",
        )
