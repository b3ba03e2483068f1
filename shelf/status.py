"""
Status reconciliation for todos, bugs and phase items.

The extractor writes free-form completion statuses (``done``, ``fixed``,
``complete`` ...) straight into the destination tables. This module maps
them onto each table's canonical terminal status and rolls completion up
into phase items.
"""

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

from .errors import StoreError
from .protocol import StoreProtocol, contains, gte
from .types import (
    BUGS, JOURNAL, PHASE_ITEMS_TABLE, PHASES_TABLE, TODOS,
    cutoff_before, utc_now,
)

logger = logging.getLogger(__name__)

DONE_STATUSES = ("done", "fixed", "resolved", "complete")
COMPLETE_STATUSES = frozenset({"completed", "resolved", "done", "fixed"})
CANONICAL_DONE = {BUGS: "resolved", TODOS: "completed"}

# Phase item titles are matched on this many leading characters
PHASE_ITEM_MATCH_LENGTH = 20


@dataclass
class CompletionCandidate:
    """An open item that a completion mention appears to describe."""
    item: dict[str, Any]
    matched_keyword: str
    match_score: float


def find_completed_items(
    items: Iterable[dict[str, Any]],
    completion_keywords: Sequence[str],
) -> list[CompletionCandidate]:
    """
    Items whose title matches at least half the terms of a completion phrase.

    A phrase term matches when it and some title word contain one another.
    The first matching phrase wins. Nothing is written; callers decide
    what to do with the candidates.
    """
    candidates = []
    for item in items:
        title_terms = (item.get("title") or "").lower().split()
        if not title_terms:
            continue
        for keyword in completion_keywords:
            keyword_terms = keyword.lower().split()
            if not keyword_terms:
                continue
            matches = [
                kt for kt in keyword_terms
                if any(kt in it or it in kt for it in title_terms)
            ]
            if len(matches) >= len(keyword_terms) * 0.5:
                candidates.append(CompletionCandidate(
                    item, keyword, len(matches) / len(keyword_terms),
                ))
                break
    return candidates


class StatusUpdater:
    """Normalizes completion statuses and marks items done."""

    def __init__(self, store: StoreProtocol):
        self._store = store

    def normalize_statuses(self, table: str, project_id: str) -> int:
        """
        Rewrite done-like statuses to the table's canonical one.

        Idempotent: rows already in canonical form are not written.

        Returns:
            Number of rows updated
        """
        canonical = CANONICAL_DONE[table]
        rows = self._store.select(
            table,
            {"project_id": project_id, "status": list(DONE_STATUSES)},
            columns=["id", "status"],
        )
        updated = 0
        for row in rows:
            if row["status"] == canonical:
                continue
            self._store.update(table, {"id": row["id"]}, {
                "status": canonical,
                "updated_at": utc_now(),
            })
            updated += 1
        if updated:
            logger.info("Normalized %d %s statuses in project %s", updated, table, project_id)
        return updated

    def update_statuses(self, project_id: str) -> dict[str, Any]:
        """Normalize both todos and bugs for a project."""
        result: dict[str, Any] = {}
        for table, key in ((TODOS, "todos_updated"), (BUGS, "bugs_updated")):
            try:
                result[key] = self.normalize_statuses(table, project_id)
            except StoreError as e:
                logger.error("Normalizing %s for %s failed: %s", table, project_id, e)
                result[key] = 0
                result["error"] = str(e)
        return result

    def recent_completion_mentions(self, project_id: str, hours: float = 24) -> list[dict]:
        """Journal entries from the last ``hours`` that mention completion."""
        try:
            return self._store.select(JOURNAL, {
                "project_id": project_id,
                "created_at": gte(cutoff_before(hours=hours)),
                "content": contains("complete"),
            }, order="created_at")
        except StoreError as e:
            logger.error("Reading completion mentions for %s failed: %s", project_id, e)
            return []

    def complete_todo(self, todo_id: str, reason: str = "Auto-detected as complete") -> bool:
        now = utc_now()
        try:
            updated = self._store.update(TODOS, {"id": todo_id}, {
                "status": "completed",
                "completed_at": now,
                "completion_note": reason,
                "updated_at": now,
            })
        except StoreError as e:
            logger.error("Completing todo %s failed: %s", todo_id, e)
            return False
        if updated:
            logger.info("Marked todo %s complete: %s", todo_id, reason)
        return bool(updated)

    def fix_bug(self, bug_id: str, reason: str = "Auto-detected as fixed") -> bool:
        now = utc_now()
        try:
            updated = self._store.update(BUGS, {"id": bug_id}, {
                "status": "resolved",
                "resolved_at": now,
                "resolution_note": reason,
                "updated_at": now,
            })
        except StoreError as e:
            logger.error("Resolving bug %s failed: %s", bug_id, e)
            return False
        if updated:
            logger.info("Marked bug %s resolved: %s", bug_id, reason)
        return bool(updated)

    def update_phase_item_statuses(self, parent_id: str) -> dict[str, Any]:
        """
        Complete pending phase items whose related work is all done.

        Related todos and bugs are those in the same phase whose title
        contains the first 20 characters of the item title. Every related
        record must be complete; items with no related records stay pending.
        """
        try:
            phases = self._store.select(PHASES_TABLE, {"parent_id": parent_id}, columns=["id"])
        except StoreError as e:
            logger.error("Phase rollup failed for %s: %s", parent_id, e)
            return {"updated": 0, "error": str(e)}

        updated = 0
        for phase in phases:
            try:
                items = self._store.select(
                    PHASE_ITEMS_TABLE, {"phase_id": phase["id"], "status": "pending"},
                )
                for item in items:
                    if self._rollup_item(phase["id"], item):
                        updated += 1
            except StoreError as e:
                logger.error("Phase rollup failed for phase %s: %s", phase["id"], e)
        return {"updated": updated}

    def _rollup_item(self, phase_id: str, item: dict[str, Any]) -> bool:
        key = (item.get("title") or "")[:PHASE_ITEM_MATCH_LENGTH]
        if not key:
            return False
        related = []
        for table in (TODOS, BUGS):
            related.extend(self._store.select(
                table, {"phase_id": phase_id, "title": contains(key)}, columns=["id", "status"],
            ))
        if not related or not all(r.get("status") in COMPLETE_STATUSES for r in related):
            return False

        now = utc_now()
        self._store.update(PHASE_ITEMS_TABLE, {"id": item["id"]}, {
            "status": "completed",
            "completed_at": now,
            "updated_at": now,
        })
        logger.info("Marked phase item %s complete: %s", item["id"], item.get("title"))
        return True
