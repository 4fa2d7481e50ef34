"""Lifecycle label service.

Combines the tracker client, the lifecycle state machine and the issue
store into the label capability used by the workflow and orchestrator:
- Applying lifecycle label changes and posting a status note
- Detecting label changes made on the tracker since the last check
- Answering whether an issue carries an admission trigger label
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Protocol, runtime_checkable

from src.dispatcher.lifecycle.machine import LifecycleStateMachine
from src.dispatcher.lifecycle.models import LifecycleLabel, TransitionOrigin
from src.dispatcher.scheduler.selection import IssueScheduler
from src.dispatcher.tracker.models import Issue, LabelChange, classify_label_change


logger = logging.getLogger(__name__)


_NEXT_STEPS = {
    LifecycleLabel.TODO: "Waiting for a container to pick up this issue.",
    LifecycleLabel.WIP: "An agent container is working on this issue.",
    LifecycleLabel.CONFIRM_NEEDED: "Please review the result and set DONE, or WIP for rework.",
    LifecycleLabel.DONE: "Work on this issue is complete.",
    LifecycleLabel.REJECT: "Set the TODO label to try again.",
}


@runtime_checkable
class IssueTracker(Protocol):
    """Protocol for the tracker reads and writes the dispatcher needs."""

    async def fetch_issues_updated_since(
        self,
        since: datetime,
        labels: Optional[List[str]] = None,
    ) -> List[Issue]:
        ...

    async def fetch_recently_updated_issues(self, since: datetime) -> List[Issue]:
        ...

    async def get_issue(self, project_id: int, iid: int) -> Issue:
        ...

    async def update_issue_labels(
        self,
        project_id: int,
        iid: int,
        labels: List[str],
    ) -> None:
        ...

    async def add_comment(self, project_id: int, iid: int, body: str) -> object:
        ...

    async def test_connection(self) -> bool:
        ...


def format_status_note(
    label: LifecycleLabel,
    reason: str,
    timestamp: Optional[datetime] = None,
) -> str:
    """Plain markdown note posted when the lifecycle label changes."""
    timestamp = timestamp or datetime.now(timezone.utc)
    return (
        f"### Status Updated: {label.value}\n\n"
        f"- **New Status**: {label.value}\n"
        f"- **Reason**: {reason}\n"
        f"- **Updated At**: {timestamp.isoformat()}\n\n"
        f"{_NEXT_STEPS[label]}"
    )


class LabelService:
    """Label capability backed by GitLab and the issue store.

    Attributes:
        tracker: Tracker client used for reads, label writes and notes.
        store: Issue store holding the last known label snapshot.
        trigger_labels: Labels that make an issue eligible for a container.
        state_machine: Validates and applies lifecycle transitions.
    """

    def __init__(
        self,
        tracker: IssueTracker,
        store: IssueScheduler,
        trigger_labels: Iterable[str],
        state_machine: Optional[LifecycleStateMachine] = None,
    ):
        self.tracker = tracker
        self.store = store
        self.trigger_labels = list(trigger_labels)
        self.state_machine = state_machine or LifecycleStateMachine(tracker)

    def current_lifecycle_label(self, issue: Issue) -> Optional[LifecycleLabel]:
        return self.state_machine.current_label(issue)

    def has_trigger_label(self, issue: Issue) -> bool:
        return any(label in self.trigger_labels for label in issue.labels)

    def is_valid_transition(
        self,
        from_label: Optional[LifecycleLabel],
        to_label: LifecycleLabel,
    ) -> bool:
        return self.state_machine.is_valid_transition(from_label, to_label)

    async def update_lifecycle_label(
        self,
        issue: Issue,
        label: LifecycleLabel,
        reason: str = "System update",
        origin: TransitionOrigin = TransitionOrigin.SYSTEM,
    ) -> bool:
        """Move an issue to ``label`` and post a status note.

        Illegal moves are logged and skipped. A failed note is logged and
        does not undo the label change.

        Returns:
            True if the label was changed.

        Raises:
            GitLabAPIError: If the label update itself fails.
        """
        transition = await self.state_machine.apply_transition(
            issue, label, reason, origin
        )
        if transition is None:
            return False

        try:
            await self.tracker.add_comment(
                issue.project_id,
                issue.iid,
                format_status_note(label, reason, transition.timestamp),
            )
        except Exception as e:
            logger.error(
                "Failed to add lifecycle comment",
                extra={"issue_id": issue.id, "issue_iid": issue.iid, "error": str(e)},
            )
        return True

    async def detect_label_changes(self, since: datetime) -> List[LabelChange]:
        """Compare recently updated issues against the stored snapshot.

        Only issues already in the store are considered. The stored
        snapshot is updated for every detected change. Any failure is
        logged and yields an empty list so the rest of the sweep still
        runs.
        """
        try:
            recent = await self.tracker.fetch_recently_updated_issues(since)
            changes: List[LabelChange] = []

            for issue in recent:
                record = await self.store.find_by_external_id(issue.id)
                if record is None:
                    continue
                if sorted(record.labels) == sorted(issue.labels):
                    continue

                changes.append(
                    LabelChange(
                        issue=issue,
                        previous_labels=record.labels,
                        current_labels=list(issue.labels),
                        changed_at=issue.updated_at,
                        change_type=classify_label_change(record.labels, issue.labels),
                    )
                )
                await self.store.update_labels(issue.id, list(issue.labels))

            if changes:
                logger.info(
                    "Detected label changes",
                    extra={"count": len(changes), "since": since.isoformat()},
                )
            return changes

        except Exception as e:
            logger.error(
                "Error detecting label changes",
                extra={"since": since.isoformat(), "error": str(e)},
                exc_info=True,
            )
            return []
