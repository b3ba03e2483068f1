"""
Bucket routing table and per-category payload builders.

Every upstream bucket maps to a destination table, the status new records
start in, and the builder that shapes a staging extraction into that
table's row. Unknown buckets are an error; there is no fallback category.
"""

import re
from dataclasses import dataclass
from typing import Any, Callable

from .errors import UnknownBucketError
from .types import (
    BUGS, CONVENTIONS, DECISIONS, DOCS, JOURNAL, KNOWLEDGE, LESSONS,
    SNIPPETS, TODOS, StagingExtraction,
)

TITLE_LENGTH = 200
SUMMARY_LENGTH = 500

# (extraction, initial status, record metadata) -> row payload
PayloadBuilder = Callable[[StagingExtraction, str, dict[str, Any]], dict[str, Any]]


def _title(extraction: StagingExtraction, default: str) -> str:
    return extraction.title or extraction.content[:TITLE_LENGTH] or default


def _type_slug(bucket: str, default: str) -> str:
    """'How-To Guide' -> 'how-to_guide'."""
    return re.sub(r"\s+", "_", bucket.lower()) if bucket else default


def _common(extraction: StagingExtraction, status: str, metadata: dict) -> dict[str, Any]:
    return {
        "status": status,
        "project_id": extraction.project_id,
        "source_session_id": extraction.session_id,
        "metadata": metadata,
    }


def build_todo(extraction: StagingExtraction, status: str, metadata: dict) -> dict[str, Any]:
    return {
        "title": _title(extraction, "Untitled"),
        "description": extraction.content,
        "priority": extraction.priority or "medium",
        **_common(extraction, status, metadata),
    }


def build_bug(extraction: StagingExtraction, status: str, metadata: dict) -> dict[str, Any]:
    return {
        "title": _title(extraction, "Untitled"),
        "description": extraction.content,
        "severity": extraction.priority or "medium",
        **_common(extraction, status, metadata),
    }


def build_journal(extraction: StagingExtraction, status: str, metadata: dict) -> dict[str, Any]:
    return {
        "title": _title(extraction, "Journal Entry"),
        "content": extraction.content,
        "entry_type": "worklog" if extraction.bucket == "Work Log" else "journal",
        "bucket": extraction.bucket,
        **_common(extraction, status, metadata),
    }


def build_decision(extraction: StagingExtraction, status: str, metadata: dict) -> dict[str, Any]:
    return {
        "title": _title(extraction, "Decision"),
        "context": extraction.content,
        **_common(extraction, status, metadata),
    }


def build_lesson(extraction: StagingExtraction, status: str, metadata: dict) -> dict[str, Any]:
    return {
        "title": _title(extraction, "Lesson Learned"),
        "description": extraction.content,
        **_common(extraction, status, metadata),
    }


def build_doc(extraction: StagingExtraction, status: str, metadata: dict) -> dict[str, Any]:
    return {
        "title": _title(extraction, "Document"),
        "content": extraction.content,
        "doc_type": _type_slug(extraction.bucket, "reference"),
        "bucket": extraction.bucket,
        **_common(extraction, status, metadata),
    }


def build_convention(extraction: StagingExtraction, status: str, metadata: dict) -> dict[str, Any]:
    return {
        "name": _title(extraction, "Convention"),
        "description": extraction.content,
        "convention_type": _type_slug(extraction.bucket, "general"),
        "bucket": extraction.bucket,
        **_common(extraction, status, metadata),
    }


def build_knowledge(extraction: StagingExtraction, status: str, metadata: dict) -> dict[str, Any]:
    return {
        "title": _title(extraction, "Knowledge Item"),
        "content": extraction.content,
        "summary": extraction.content[:SUMMARY_LENGTH],
        "knowledge_type": _type_slug(extraction.bucket, "general"),
        "bucket": extraction.bucket,
        **_common(extraction, status, metadata),
    }


def build_snippet(extraction: StagingExtraction, status: str, metadata: dict) -> dict[str, Any]:
    return {
        "content": extraction.content,
        "context": extraction.title or "Extracted snippet",
        "snippet_type": "extracted",
        "bucket": extraction.bucket,
        **_common(extraction, status, metadata),
    }


@dataclass(frozen=True)
class BucketRoute:
    table: str
    status: str
    builder: PayloadBuilder


BUCKETS: dict[str, BucketRoute] = {
    # Bugs
    "Bugs Open": BucketRoute(BUGS, "open", build_bug),
    "Bugs Fixed": BucketRoute(BUGS, "fixed", build_bug),
    # Todos
    "Todos": BucketRoute(TODOS, "unassigned", build_todo),
    # Journal
    "Journal": BucketRoute(JOURNAL, "pending", build_journal),
    "Work Log": BucketRoute(JOURNAL, "pending", build_journal),
    # Decisions and lessons
    "Decisions": BucketRoute(DECISIONS, "pending", build_decision),
    "Lessons": BucketRoute(LESSONS, "pending", build_lesson),
    # Docs
    "System Breakdown": BucketRoute(DOCS, "pending", build_doc),
    "How-To Guide": BucketRoute(DOCS, "pending", build_doc),
    "Schematic": BucketRoute(DOCS, "pending", build_doc),
    "Reference": BucketRoute(DOCS, "pending", build_doc),
    # Conventions start active
    "Naming Conventions": BucketRoute(CONVENTIONS, "active", build_convention),
    "File Structure": BucketRoute(CONVENTIONS, "active", build_convention),
    "Database Patterns": BucketRoute(CONVENTIONS, "active", build_convention),
    "API Patterns": BucketRoute(CONVENTIONS, "active", build_convention),
    "Component Patterns": BucketRoute(CONVENTIONS, "active", build_convention),
    # Knowledge
    "Ideas": BucketRoute(KNOWLEDGE, "pending", build_knowledge),
    "Quirks & Gotchas": BucketRoute(KNOWLEDGE, "pending", build_knowledge),
    "Other": BucketRoute(KNOWLEDGE, "pending", build_knowledge),
    # Snippets
    "Snippets": BucketRoute(SNIPPETS, "pending", build_snippet),
}


def lookup_route(bucket: str) -> BucketRoute:
    """
    Route for a bucket name (exact, case-sensitive).

    Raises:
        UnknownBucketError: If the bucket is not in BUCKETS.
    """
    try:
        return BUCKETS[bucket]
    except KeyError:
        raise UnknownBucketError(bucket) from None
