"""Lifecycle state machine for issue status labels.

The machine decides whether a label move is legal and, when it is,
computes the new label set and hands it to a label writer. It never
raises on an illegal move: the rejection is logged and the caller gets
``False`` back.
"""

import logging
from typing import List, Optional, Protocol, runtime_checkable

from src.dispatcher.lifecycle.models import (
    LifecycleLabel,
    LifecycleTransition,
    TransitionOrigin,
    is_valid_transition,
    replace_lifecycle_label,
)
from src.dispatcher.tracker.models import Issue


logger = logging.getLogger(__name__)


@runtime_checkable
class LabelWriter(Protocol):
    """Protocol for the tracker write used to replace an issue's labels."""

    async def update_issue_labels(
        self,
        project_id: int,
        iid: int,
        labels: List[str],
    ) -> None:
        """Replace the full label list of an issue.

        Args:
            project_id: Owning project identity.
            iid: Project-local issue number.
            labels: The complete new label list.
        """
        ...


class LifecycleStateMachine:
    """Validates and applies lifecycle label transitions.

    Attributes:
        label_writer: Tracker write capability used by apply_transition.

    Example:
        >>> machine = LifecycleStateMachine(gitlab_client)
        >>> await machine.apply_transition(issue, LifecycleLabel.WIP, "Container starting")
        True
    """

    def __init__(self, label_writer: Optional[LabelWriter] = None):
        self.label_writer = label_writer

    @staticmethod
    def is_valid_transition(
        from_label: Optional[LifecycleLabel],
        to_label: LifecycleLabel,
    ) -> bool:
        return is_valid_transition(from_label, to_label)

    @staticmethod
    def current_label(issue: Issue) -> Optional[LifecycleLabel]:
        return issue.lifecycle_label

    def plan_transition(
        self,
        issue: Issue,
        to_label: LifecycleLabel,
        reason: str = "System update",
        origin: TransitionOrigin = TransitionOrigin.SYSTEM,
    ) -> Optional[LifecycleTransition]:
        """Return the transition record for a legal move, or None.

        Rejected moves are logged at warning level.
        """
        from_label = self.current_label(issue)
        if not self.is_valid_transition(from_label, to_label):
            logger.warning(
                "Lifecycle transition rejected",
                extra={
                    "issue_id": issue.id,
                    "issue_iid": issue.iid,
                    "from_label": from_label.value if from_label else None,
                    "to_label": to_label.value,
                    "reason": reason,
                },
            )
            return None
        return LifecycleTransition(
            from_label=from_label,
            to_label=to_label,
            reason=reason,
            origin=origin,
        )

    async def apply_transition(
        self,
        issue: Issue,
        to_label: LifecycleLabel,
        reason: str = "System update",
        origin: TransitionOrigin = TransitionOrigin.SYSTEM,
    ) -> Optional[LifecycleTransition]:
        """Move an issue to ``to_label`` if the move is legal.

        The issue's labels are replaced on the tracker and on the cached
        ``issue`` object. Tracker failures propagate to the caller.

        Args:
            issue: The issue to move.
            to_label: The target managed label.
            reason: Human-readable reason, used for logs and notes.
            origin: Who caused the transition.

        Returns:
            The applied transition, or None if it was rejected.

        Raises:
            RuntimeError: If no label writer is configured.
        """
        transition = self.plan_transition(issue, to_label, reason, origin)
        if transition is None:
            return None

        if self.label_writer is None:
            raise RuntimeError("LifecycleStateMachine has no label writer")

        new_labels = replace_lifecycle_label(issue.labels, to_label)
        await self.label_writer.update_issue_labels(
            issue.project_id,
            issue.iid,
            new_labels,
        )
        issue.labels = new_labels

        logger.info(
            "Lifecycle transition applied",
            extra={
                "issue_id": issue.id,
                "issue_iid": issue.iid,
                "from_label": (
                    transition.from_label.value if transition.from_label else None
                ),
                "to_label": to_label.value,
                "reason": reason,
                "origin": origin.value,
            },
        )
        return transition
