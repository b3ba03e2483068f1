"""
Session archiver: extracted -> cleaned -> archived.

Sessions that have sat in ``extracted`` for ``clean_after_hours`` get their
raw transcript scrubbed in place and a lightweight summary written to the
summaries table. Once ``clean_after_hours + archive_after_hours`` have
passed since extraction they are marked ``archived``. Both steps measure
from ``semantic_extracted_at``.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .errors import StoreError
from .protocol import StoreProtocol, lt
from .scheduler import CycleGuard
from .types import (
    SESSION_ARCHIVED, SESSION_CLEANED, SESSION_EXTRACTED, SESSION_STATUSES,
    SESSION_SUMMARIES_TABLE, SESSIONS_TABLE, SessionRecord, cutoff_before,
    format_utc,
)

logger = logging.getLogger(__name__)

CLEAN_AFTER_HOURS = 48
ARCHIVE_AFTER_HOURS = 24
BATCH_SIZE = 20
MAX_CONTENT_LENGTH = 50_000
MAX_TOPICS = 10
MAX_LISTED_MESSAGES = 20

# Scrubbing rules, applied in order
_SCRUB_RULES = [
    (re.compile(r'"type"\s*:\s*"tool_use".*?"input"\s*:\s*\{.*?\}\s*\}', re.S), "[tool call]"),
    (re.compile(r'"type"\s*:\s*"tool_result".*?"content"\s*:\s*".*?"', re.S), "[tool result]"),
    (re.compile(r"```.{500,}?```", re.S), "[code block removed]"),
    (re.compile(r"data:image/[^;]+;base64,[A-Za-z0-9+/=]{100,}"), "[image removed]"),
    (re.compile(r"((?:/[\w.-]+){4,}\s*){5,}"), "[file paths removed]"),
    (re.compile(r"\n{4,}"), "\n\n\n"),
    (re.compile(r"node_modules/[\w/@.-]+"), "[node_modules path]"),
]

_USER_LINE = re.compile(r'^(Human|User|You|>):|"role"\s*:\s*"user"', re.I)
_ASSISTANT_LINE = re.compile(r'^(Assistant|Claude|AI):|"role"\s*:\s*"assistant"', re.I)

_TOPIC_PATTERNS = [
    re.compile(r"(?:working on|implementing|fixing|building|creating)\s+([^.!?\n]{10,50})", re.I),
    re.compile(r"(?:the|this)\s+(feature|bug|issue|component|service|api|endpoint)\s+([^.!?\n]{5,30})", re.I),
]
_DECISION_PATTERN = re.compile(r"(?:decided to|decision:|going with)\s+([^.!?\n]{5,100})", re.I)
_ACTION_PATTERN = re.compile(r"(?:TODO:|next steps?:|need to)\s+([^.!?\n]{5,100})", re.I)


def clean_raw_content(content: str) -> str:
    """
    Scrub a session transcript down to its conversation.

    Replaces tool call/result blobs, long code fences, inline images,
    runs of file paths and node_modules paths with short markers,
    collapses blank-line runs and keeps the last 50,000 characters.
    """
    if not content:
        return ""
    cleaned = content
    for pattern, replacement in _SCRUB_RULES:
        cleaned = pattern.sub(replacement, cleaned)
    if len(cleaned) > MAX_CONTENT_LENGTH:
        cleaned = cleaned[-MAX_CONTENT_LENGTH:]
    return cleaned.strip()


@dataclass
class SessionSummary:
    text: str = ""
    topics: list[str] = field(default_factory=list)
    decisions: list[str] = field(default_factory=list)
    actions: list[str] = field(default_factory=list)


def _user_messages(content: str) -> list[str]:
    messages = []
    current: list[str] = []
    in_user = False
    for line in content.split("\n"):
        if _USER_LINE.search(line):
            if in_user and current:
                messages.append("\n".join(current).strip())
            in_user = True
            current = [line]
        elif _ASSISTANT_LINE.search(line):
            if in_user and current:
                messages.append("\n".join(current).strip())
            in_user = False
            current = []
        elif in_user:
            current.append(line)
    if in_user and current:
        messages.append("\n".join(current).strip())
    return messages


def _collect(patterns, content: str, limit: int) -> list[str]:
    found: list[str] = []
    for pattern in patterns:
        for match in pattern.finditer(content):
            phrase = " ".join(g.strip() for g in match.groups() if g).strip()
            if phrase and phrase not in found:
                found.append(phrase)
                if len(found) >= limit:
                    return found
    return found


def extract_summary(content: str, session: SessionRecord) -> SessionSummary:
    """Summarize a cleaned transcript: user messages, topics, decisions, actions."""
    messages = _user_messages(content)
    lines = [
        f"Session from {session.started_at or 'unknown date'}",
        f"Project: {session.project_id or 'unknown project'}",
        "",
        f"User messages ({len(messages)} found):",
    ]
    lines.extend(
        f"{i}. {m[:200]}..." for i, m in enumerate(messages[:MAX_LISTED_MESSAGES], start=1)
    )
    return SessionSummary(
        text="\n".join(lines),
        topics=_collect(_TOPIC_PATTERNS, content, MAX_TOPICS),
        decisions=_collect([_DECISION_PATTERN], content, MAX_TOPICS),
        actions=_collect([_ACTION_PATTERN], content, MAX_TOPICS),
    )


@dataclass
class ArchiverStats:
    cleaned: int = 0
    archived: int = 0
    errors: int = 0
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        if self.skipped:
            return {"skipped": True}
        return {"cleaned": self.cleaned, "archived": self.archived, "errors": self.errors}


class Archiver:
    """Moves extracted sessions through cleaning and into the archive."""

    def __init__(
        self,
        store: StoreProtocol,
        *,
        clean_after_hours: float = CLEAN_AFTER_HOURS,
        archive_after_hours: float = ARCHIVE_AFTER_HOURS,
        batch_size: int = BATCH_SIZE,
        guard: Optional[CycleGuard] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._store = store
        self.clean_after_hours = clean_after_hours
        self.archive_after_hours = archive_after_hours
        self.batch_size = batch_size
        self.guard = guard or CycleGuard("Archiver")
        self._clock = clock

    def run_cycle(self) -> ArchiverStats:
        """One cleaning pass then one archiving pass; skipped if already running."""
        with self.guard.cycle() as acquired:
            if not acquired:
                logger.debug("Archiver already running, skipping")
                return ArchiverStats(skipped=True)
            stats = ArchiverStats()
            stats.cleaned, stats.errors = self.clean_extracted()
            try:
                stats.archived = self.archive_cleaned()
            except StoreError as e:
                logger.error("Archiving cleaned sessions failed: %s", e)
                stats.errors += 1
            if stats.cleaned or stats.archived or stats.errors:
                logger.info(
                    "Archiver cycle complete: %d cleaned, %d archived, %d errors",
                    stats.cleaned, stats.archived, stats.errors,
                )
            return stats

    def clean_extracted(self) -> tuple[int, int]:
        """
        Clean sessions extracted more than ``clean_after_hours`` ago.

        Returns:
            (cleaned, errors)
        """
        now = self._clock()
        cutoff = cutoff_before(hours=self.clean_after_hours, now=now)
        try:
            rows = self._store.select(SESSIONS_TABLE, {
                "status": SESSION_EXTRACTED,
                "semantic_extracted_at": lt(cutoff),
            }, order="semantic_extracted_at", limit=self.batch_size)
        except StoreError as e:
            logger.error("Fetching extracted sessions failed: %s", e)
            return 0, 1

        cleaned = errors = 0
        for row in rows:
            session = SessionRecord.from_row(row)
            try:
                if self._clean_session(session, format_utc(now)):
                    cleaned += 1
            except StoreError as e:
                logger.error("Cleaning session %s failed: %s", session.id, e)
                errors += 1
        if cleaned:
            logger.info("Cleaned %d sessions", cleaned)
        return cleaned, errors

    def _clean_session(self, session: SessionRecord, now: str) -> bool:
        """Scrub one session and summarize it. False if another cycle got there first."""
        content = clean_raw_content(session.raw_content)
        changed = self._store.update(
            SESSIONS_TABLE,
            {"id": session.id, "status": SESSION_EXTRACTED},
            {"status": SESSION_CLEANED, "raw_content": content,
             "cleaned_at": now, "updated_at": now},
        )
        if changed != 1:
            logger.info("Session %s was already cleaned by another cycle", session.id)
            return False

        summary = extract_summary(content, session)
        try:
            self._store.insert(SESSION_SUMMARIES_TABLE, {
                "session_id": session.id,
                "summary": f"[Session {session.id}]\n\n{summary.text}",
                "key_topics": summary.topics,
                "decisions_made": summary.decisions,
                "action_items": summary.actions,
            })
        except StoreError as e:
            logger.warning("Writing summary for session %s failed: %s", session.id, e)
        logger.debug("Session %s cleaned", session.id)
        return True

    def archive_cleaned(self) -> int:
        """Archive cleaned sessions past both dwell times. Returns the count."""
        now = self._clock()
        cutoff = cutoff_before(
            hours=self.clean_after_hours + self.archive_after_hours, now=now,
        )
        rows = self._store.select(SESSIONS_TABLE, {
            "status": SESSION_CLEANED,
            "semantic_extracted_at": lt(cutoff),
        }, columns=["id"], order="semantic_extracted_at", limit=self.batch_size)
        if not rows:
            return 0
        ids = [row["id"] for row in rows]
        stamp = format_utc(now)
        archived = self._store.update(
            SESSIONS_TABLE,
            {"id": ids, "status": SESSION_CLEANED},
            {"status": SESSION_ARCHIVED, "archived_at": stamp, "updated_at": stamp},
        )
        logger.info("Archived %d sessions", archived)
        return archived

    def stats(self) -> dict[str, int]:
        """Session counts per lifecycle status, plus the number of summaries."""
        counts = {
            status: self._store.count(SESSIONS_TABLE, {"status": status})
            for status in SESSION_STATUSES
        }
        counts["summaries"] = self._store.count(SESSION_SUMMARIES_TABLE)
        return counts
