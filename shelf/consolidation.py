"""
Consolidation: fold duplicate groups into one canonical record.

The oldest record in a group becomes the master and takes a merged title;
the rest are marked ``consolidated`` and point at the master through
``consolidated_into``. Nothing is deleted.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from .duplicates import DuplicateDetector
from .errors import StoreError
from .projects import list_project_ids
from .protocol import StoreProtocol
from .similarity import ordered_terms
from .types import CONSOLIDATED, CONVENTIONS, SNIPPETS, DestinationRecord, utc_now

logger = logging.getLogger(__name__)

# Tables whose display title lives in another column
TITLE_COLUMNS = {CONVENTIONS: "name", SNIPPETS: "context"}


def title_column(table: str) -> str:
    return TITLE_COLUMNS.get(table, "title")


def merge_titles(titles: Sequence[str]) -> str:
    """
    Merge several near-duplicate titles into one.

    Terms shared by every title frame the terms that differ:
    ``"<first common> <unique, ...> <remaining common>"``. When there is no
    such split, the titles are listed as ``"a, b and c"``.

    >>> merge_titles(["fix login on dashboard", "fix logout on dashboard"])
    'fix login, logout dashboard'
    """
    if not titles:
        return ""
    if len(titles) == 1:
        return titles[0]

    term_lists = [ordered_terms(t) for t in titles]
    counts: dict[str, int] = {}
    for terms in term_lists:
        for term in terms:
            counts[term] = counts.get(term, 0) + 1

    common = [t for t, n in counts.items() if n == len(titles)]
    unique = [t for t in counts if t not in common]

    if common and unique:
        merged = f"{common[0]} {', '.join(unique)}"
        rest = " ".join(common[1:])
        return f"{merged} {rest}" if rest else merged

    return ", ".join(titles[:-1]) + " and " + titles[-1]


@dataclass
class ConsolidationResult:
    master_id: str
    merged_title: str
    duplicates_consolidated: int


@dataclass
class TableConsolidation:
    groups: int = 0
    consolidated: int = 0
    failed_groups: int = 0


class Consolidator:
    """Merges duplicate groups found by a DuplicateDetector."""

    def __init__(self, store: StoreProtocol, detector: Optional[DuplicateDetector] = None):
        self._store = store
        self.detector = detector or DuplicateDetector(store)

    def consolidate_group(
        self, table: str, group: Sequence[DestinationRecord],
    ) -> Optional[ConsolidationResult]:
        """
        Fold a group into its oldest member.

        Returns:
            The result, or None for groups of fewer than two records

        Raises:
            StoreError: If an update fails (earlier updates are not undone)
        """
        if len(group) < 2:
            return None

        ordered = sorted(group, key=lambda r: r.created_at)
        master, duplicates = ordered[0], ordered[1:]
        merged_title = merge_titles([r.title for r in group])
        now = utc_now()

        self._store.update(table, {"id": master.id}, {
            title_column(table): merged_title,
            "updated_at": now,
        })
        for dup in duplicates:
            self._store.update(table, {"id": dup.id}, {
                "status": CONSOLIDATED,
                "consolidated_into": master.id,
                "updated_at": now,
            })

        logger.info(
            "Consolidated %d records into %s %s: %r",
            len(duplicates), table, master.id, merged_title,
        )
        return ConsolidationResult(master.id, merged_title, len(duplicates))

    def consolidate_table(self, table: str, project_id: str) -> TableConsolidation:
        """Find and consolidate every duplicate group of one project."""
        summary = TableConsolidation()
        groups = self.detector.find_duplicates(table, project_id).groups
        summary.groups = len(groups)
        for group in groups:
            try:
                result = self.consolidate_group(table, group)
            except StoreError as e:
                logger.error(
                    "Consolidating group of %s in %s failed: %s", group[0].id, table, e,
                )
                summary.failed_groups += 1
                continue
            if result:
                summary.consolidated += result.duplicates_consolidated
        return summary

    def consolidate_all(self, table: str) -> dict:
        """
        Consolidate a table across all projects.

        Returns:
            ``{"total_consolidated", "projects_processed", "failed_groups"}``
        """
        try:
            project_ids = list_project_ids(self._store)
        except StoreError as e:
            logger.error("consolidate_all failed listing projects: %s", e)
            return {"total_consolidated": 0, "projects_processed": 0,
                    "failed_groups": 0, "error": str(e)}

        total = processed = failed = 0
        for project_id in project_ids:
            summary = self.consolidate_table(table, project_id)
            total += summary.consolidated
            failed += summary.failed_groups
            if summary.consolidated:
                processed += 1
        return {"total_consolidated": total, "projects_processed": processed,
                "failed_groups": failed}
