"""Per-project exclusive issue selection.

A project may have at most one issue in flight (WIP or CONFIRM NEEDED).
Given a locked snapshot of every schedulable record, each project with no
in-flight issue admits exactly its oldest eligible TODO issue. Records
marked ineligible still count towards blocking but are never picked.
The selection is a pure function of the snapshot so the store only has
to supply rows.

This module also defines the IssueScheduler protocol the orchestrator
depends on; the PostgreSQL implementation is in repository.py.
"""

from collections import OrderedDict
from datetime import datetime
from typing import (
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    Sequence,
    runtime_checkable,
)

from src.dispatcher.lifecycle.models import BLOCKING_LABELS, LifecycleLabel
from src.dispatcher.scheduler.models import (
    IssueRecord,
    IssueStats,
    LifecycleStats,
    ProjectIssueStats,
)
from src.dispatcher.tracker.models import Issue


def blocking_counts(records: Iterable[IssueRecord]) -> Dict[int, int]:
    """Count in-flight records per project."""
    counts: Dict[int, int] = {}
    for record in records:
        counts.setdefault(record.project_id, 0)
        if record.lifecycle_label in BLOCKING_LABELS:
            counts[record.project_id] += 1
    return counts


def select_oldest_unblocked(records: Sequence[IssueRecord]) -> List[IssueRecord]:
    """Pick the oldest eligible TODO record of every unblocked project.

    Args:
        records: Snapshot of schedulable records, any order.

    Returns:
        At most one record per project, ordered by project id.

    Example:
        >>> select_oldest_unblocked([older_todo, newer_todo])
        [older_todo]
    """
    counts = blocking_counts(records)
    candidates: Dict[int, List[IssueRecord]] = OrderedDict()
    for record in sorted(records, key=lambda r: (r.project_id, r.created_at)):
        if record.lifecycle_label == LifecycleLabel.TODO and record.eligible:
            candidates.setdefault(record.project_id, []).append(record)

    selected = []
    for project_id, todos in candidates.items():
        if counts.get(project_id, 0) == 0 and todos:
            selected.append(todos[0])
    return selected


@runtime_checkable
class IssueScheduler(Protocol):
    """Protocol for the persisted issue store and atomic selection.

    Selection is the only cross-process exclusion mechanism: it must lock
    every schedulable row for the duration of the read-modify-write, and
    treat a failed lock as an empty selection.
    """

    async def select_processable_issues(self) -> List[IssueRecord]:
        """Atomically admit the oldest TODO issue of each unblocked project.

        Returns:
            The admitted records with ``processed_at`` set to now. Empty
            when another pass holds the locks.

        Raises:
            StoreError: If the store fails for any other reason.
        """
        ...

    async def mark_processed(
        self,
        issue: Issue,
        container_id: Optional[str] = None,
        eligible: Optional[bool] = None,
    ) -> None:
        """Upsert the issue's record with ``processed_at=now``.

        ``container_id`` is stored when provided and kept otherwise.
        ``eligible`` likewise; new records default to eligible.
        """
        ...

    async def reset_processed_time(self, issue_id: int) -> None:
        """Set ``processed_at`` back to ``created_at``, clear the container
        and make the record eligible again."""
        ...

    async def revert_processing_mark(self, issue_id: int) -> None:
        """Undo a selection stamp without touching the container."""
        ...

    async def mark_ineligible(self, issue_id: int) -> None:
        """Undo a selection stamp and keep the record out of later selections."""
        ...

    async def find_by_external_id(self, issue_id: int) -> Optional[IssueRecord]:
        ...

    async def find_by_container_id(self, container_id: str) -> Optional[IssueRecord]:
        ...

    async def get_processed_issue_ids(self) -> List[int]:
        """Issue ids stored under a lifecycle label other than TODO."""
        ...

    async def get_last_check_time(self) -> Optional[datetime]:
        ...

    async def update_labels(self, issue_id: int, labels: List[str]) -> None:
        ...

    async def get_project_blocking_count(self, project_id: int) -> int:
        ...

    async def get_issue_stats(self) -> IssueStats:
        ...

    async def get_project_issue_stats(self) -> List[ProjectIssueStats]:
        ...

    async def get_lifecycle_stats(self) -> LifecycleStats:
        ...
