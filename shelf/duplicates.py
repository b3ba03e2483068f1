"""
Duplicate detection within a project + table + status scope.

Grouping is single-link: a record joins a group when it is similar to any
member already in the group, so a chain A~B, B~C can put A and C together
even when A and C are not similar to each other. Detection is advisory;
store failures produce an empty result rather than an error.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Sequence

from .errors import StoreError
from .projects import list_project_ids
from .protocol import StoreProtocol
from .similarity import are_similar
from .types import DestinationRecord

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.7
DEFAULT_OPEN_STATUSES = ("open", "unassigned", "pending", "active")


@dataclass
class DuplicateResult:
    """Duplicate clusters (two or more members) and everything else."""
    groups: list[list[DestinationRecord]] = field(default_factory=list)
    singles: list[DestinationRecord] = field(default_factory=list)


def group_records(
    records: Sequence[DestinationRecord],
    threshold: float = DEFAULT_THRESHOLD,
    scorer: Callable[[DestinationRecord, DestinationRecord], float] = are_similar,
) -> DuplicateResult:
    """
    Cluster records already sorted by creation time.

    Each not-yet-grouped record starts a group; every later ungrouped
    record scoring >= threshold against any current member joins it.
    """
    result = DuplicateResult()
    used: set[int] = set()

    for i, record in enumerate(records):
        if i in used:
            continue
        used.add(i)
        group = [record]
        for j in range(i + 1, len(records)):
            if j in used:
                continue
            candidate = records[j]
            if any(scorer(member, candidate) >= threshold for member in group):
                group.append(candidate)
                used.add(j)
        if len(group) > 1:
            result.groups.append(group)
        else:
            result.singles.append(record)

    return result


class DuplicateDetector:
    """Finds near-duplicate records in the destination tables."""

    def __init__(
        self,
        store: StoreProtocol,
        *,
        threshold: float = DEFAULT_THRESHOLD,
        scorer: Callable[[DestinationRecord, DestinationRecord], float] = are_similar,
    ):
        self._store = store
        self.threshold = threshold
        self._scorer = scorer

    def find_duplicates(
        self,
        table: str,
        project_id: str,
        statuses: Sequence[str] = DEFAULT_OPEN_STATUSES,
    ) -> DuplicateResult:
        """Group the project's records in ``table`` whose status is in ``statuses``."""
        try:
            rows = self._store.select(
                table,
                {"project_id": project_id, "status": list(statuses)},
                order="created_at",
            )
        except StoreError as e:
            logger.error("find_duplicates failed for %s/%s: %s", table, project_id, e)
            return DuplicateResult()

        records = [DestinationRecord.from_row(row) for row in rows]
        result = group_records(records, self.threshold, self._scorer)
        if result.groups:
            logger.info(
                "Found %d duplicate groups in %s for project %s",
                len(result.groups), table, project_id,
            )
        return result

    def find_all_duplicates(
        self,
        table: str,
        statuses: Sequence[str] = DEFAULT_OPEN_STATUSES,
    ) -> list[list[DestinationRecord]]:
        """Duplicate groups across every known project."""
        try:
            project_ids = list_project_ids(self._store)
        except StoreError as e:
            logger.error("find_all_duplicates failed listing projects: %s", e)
            return []

        groups: list[list[DestinationRecord]] = []
        for project_id in project_ids:
            groups.extend(self.find_duplicates(table, project_id, statuses).groups)
        return groups
