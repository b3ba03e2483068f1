"""
Phase classification: file open todos and bugs under a planning phase.

Phases belong to parent projects. Each phase gets a keyword set from its
name and item titles; a record is assigned to the phase whose keywords
cover the largest share of the record title's terms.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from .errors import StoreError
from .projects import get_parent_id
from .protocol import StoreProtocol
from .similarity import extract_terms
from .types import (
    BUGS, PHASE_ITEMS_TABLE, PHASES_TABLE, TODOS,
    Phase, PhaseItem, utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_MIN_SCORE = 0.3
UNASSIGNED_STATUSES = ("unassigned", "open", "pending", "active")


@dataclass
class PhaseMatch:
    phase_id: str
    phase_name: str
    phase_num: int
    score: float


def extract_phase_keywords(name: str, items: Iterable[PhaseItem]) -> set[str]:
    """Union of the terms in a phase name and all of its item titles."""
    keywords = set(extract_terms(name))
    for item in items:
        keywords |= extract_terms(item.title)
    return keywords


def calculate_phase_match(title: str, phase: Phase) -> float:
    """Fraction of the title's terms found in the phase keywords."""
    terms = extract_terms(title)
    if not terms or not phase.keywords:
        return 0.0
    return len(terms & phase.keywords) / len(terms)


def find_best_phase(
    title: str,
    phases: Sequence[Phase],
    min_score: float = DEFAULT_MIN_SCORE,
) -> Optional[PhaseMatch]:
    """
    The phase that best matches a title, or None if none reach min_score.

    Only a strictly higher score replaces the current best, so ties go to
    the earliest phase.
    """
    best: Optional[PhaseMatch] = None
    best_score = 0.0
    for phase in phases:
        score = calculate_phase_match(title, phase)
        if score > best_score and score >= min_score:
            best_score = score
            best = PhaseMatch(phase.id, phase.name, phase.phase_num, score)
    return best


class PhaseClassifier:
    """Assigns unphased records to their parent project's phases."""

    def __init__(self, store: StoreProtocol, *, min_score: float = DEFAULT_MIN_SCORE):
        self._store = store
        self.min_score = min_score

    def get_project_phases(self, parent_id: str) -> list[Phase]:
        """
        Phases of a parent project in phase order, with items and keywords.

        Returns an empty list if the phases cannot be read.
        """
        try:
            rows = self._store.select(PHASES_TABLE, {"parent_id": parent_id}, order="phase_num")
            phases = []
            for row in rows:
                item_rows = self._store.select(
                    PHASE_ITEMS_TABLE, {"phase_id": row["id"]}, order="sort_order",
                )
                items = [
                    PhaseItem(r["id"], r.get("title") or "", r.get("status") or "pending")
                    for r in item_rows
                ]
                name = row.get("name") or ""
                phases.append(Phase(
                    id=row["id"],
                    name=name,
                    phase_num=row.get("phase_num") or 0,
                    status=row.get("status") or "",
                    items=items,
                    keywords=extract_phase_keywords(name, items),
                ))
            return phases
        except StoreError as e:
            logger.error("Loading phases failed for %s: %s", parent_id, e)
            return []

    def assign_phases(self, table: str, project_id: str, parent_id: str) -> dict:
        """
        Assign each unphased, open record of a project to its best phase.

        Records that already have a phase are never touched. A failed
        update is counted as skipped and the batch continues.

        Returns:
            ``{"assigned": n, "skipped": n}``, plus ``"no_phases": True``
            when the parent defines no phases.
        """
        phases = self.get_project_phases(parent_id)
        if not phases:
            return {"assigned": 0, "skipped": 0, "no_phases": True}

        try:
            rows = self._store.select(table, {
                "project_id": project_id,
                "phase_id": None,
                "status": list(UNASSIGNED_STATUSES),
            }, order="created_at")
        except StoreError as e:
            logger.error("assign_phases failed for %s/%s: %s", table, project_id, e)
            return {"assigned": 0, "skipped": 0, "error": str(e)}

        assigned = skipped = 0
        for row in rows:
            title = row.get("title") or ""
            match = find_best_phase(title, phases, self.min_score)
            if match is None:
                skipped += 1
                continue
            try:
                self._store.update(
                    table, {"id": row["id"]},
                    {"phase_id": match.phase_id, "updated_at": utc_now()},
                )
            except StoreError as e:
                logger.warning("Phase assignment failed for %s %s: %s", table, row["id"], e)
                skipped += 1
                continue
            assigned += 1
            logger.info(
                "Assigned %s %s to phase %r (%.2f): %s",
                table, row["id"], match.phase_name, match.score, title[:50],
            )
        return {"assigned": assigned, "skipped": skipped}

    def assign_all_phases(self, project_id: str) -> dict:
        """Run phase assignment over a project's todos and bugs."""
        parent_id = get_parent_id(self._store, project_id)
        if not parent_id:
            return {"todos": 0, "bugs": 0, "no_parent": True}
        todos = self.assign_phases(TODOS, project_id, parent_id)
        bugs = self.assign_phases(BUGS, project_id, parent_id)
        return {"todos": todos["assigned"], "bugs": bugs["assigned"], "parent_id": parent_id}
