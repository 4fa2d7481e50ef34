"""Issue lifecycle label models.

This module defines the data models for the issue lifecycle, including:
- LifecycleLabel: Enum of the managed status labels
- LifecycleTransition: Record of a label change with reason and origin
- VALID_TRANSITIONS: Map defining allowed label transitions

The lifecycle of an issue is carried entirely by its tracker labels. At
most one managed label is present on an issue at a time; an issue with no
managed label sits outside the lifecycle.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field


class LifecycleLabel(str, Enum):
    """Managed status labels an issue moves through.

    Label Flow:
        TODO → WIP → CONFIRM NEEDED → DONE

    TODO, WIP and CONFIRM NEEDED can be rejected. A rejected issue can be
    reset to TODO by a human. CONFIRM NEEDED can be sent back to WIP when
    the reviewer asks for more work.

    The enum values are the literal label strings used on the tracker.

    Attributes:
        TODO: Admitted work waiting for a container.
        WIP: A container is working on the issue.
        CONFIRM_NEEDED: The agent finished; waiting for a human to confirm.
        DONE: Confirmed complete.
        REJECT: Permanently failed or refused; needs a human reset.
    """

    TODO = "TODO"
    WIP = "WIP"
    CONFIRM_NEEDED = "CONFIRM NEEDED"
    DONE = "DONE"
    REJECT = "REJECT"


class TransitionOrigin(str, Enum):
    """Who caused a lifecycle transition."""

    SYSTEM = "system"
    USER = "user"
    ERROR = "error"


class LifecycleTransition(BaseModel):
    """Record of a lifecycle label change.

    Attributes:
        from_label: The managed label before the change, if any.
        to_label: The managed label after the change.
        reason: Why the change was made.
        origin: Whether the system, a user or an error caused it.
        timestamp: When the change occurred (UTC).
    """

    from_label: Optional[LifecycleLabel] = Field(
        default=None,
        description="The managed label before the change (None if unmanaged)",
    )

    to_label: LifecycleLabel = Field(
        ...,
        description="The managed label after the change",
    )

    reason: str = Field(
        default="System update",
        description="Why the change was made",
    )

    origin: TransitionOrigin = Field(
        default=TransitionOrigin.SYSTEM,
        description="Who caused the transition",
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the transition occurred (UTC timezone)",
    )


# Valid lifecycle transitions map
#
# - Every non-terminal label can be rejected
# - DONE is terminal
# - REJECT only leaves through a manual reset to TODO
# - CONFIRM NEEDED can bounce back to WIP for rework
VALID_TRANSITIONS: Dict[LifecycleLabel, List[LifecycleLabel]] = {
    LifecycleLabel.TODO: [
        LifecycleLabel.WIP,
        LifecycleLabel.REJECT,
    ],
    LifecycleLabel.WIP: [
        LifecycleLabel.CONFIRM_NEEDED,
        LifecycleLabel.REJECT,
    ],
    LifecycleLabel.CONFIRM_NEEDED: [
        LifecycleLabel.DONE,
        LifecycleLabel.WIP,
        LifecycleLabel.REJECT,
    ],
    LifecycleLabel.DONE: [],
    LifecycleLabel.REJECT: [
        LifecycleLabel.TODO,
    ],
}

# Labels that hold a project's single in-flight slot
BLOCKING_LABELS = frozenset({LifecycleLabel.WIP, LifecycleLabel.CONFIRM_NEEDED})

# Labels the scheduler locks and inspects
SCHEDULABLE_LABELS = (
    LifecycleLabel.TODO,
    LifecycleLabel.WIP,
    LifecycleLabel.CONFIRM_NEEDED,
)

LIFECYCLE_LABEL_VALUES = frozenset(label.value for label in LifecycleLabel)


def is_valid_transition(
    from_label: Optional[LifecycleLabel],
    to_label: LifecycleLabel,
) -> bool:
    """Check if a lifecycle transition is valid.

    An issue with no managed label (``from_label`` is None) is entering
    the lifecycle from outside, which is always allowed.

    Args:
        from_label: The current managed label, or None.
        to_label: The target managed label.

    Returns:
        bool: True if the transition is valid, False otherwise.

    Example:
        >>> is_valid_transition(LifecycleLabel.TODO, LifecycleLabel.WIP)
        True
        >>> is_valid_transition(LifecycleLabel.DONE, LifecycleLabel.TODO)
        False
        >>> is_valid_transition(None, LifecycleLabel.REJECT)
        True
    """
    if from_label is None:
        return True
    return to_label in VALID_TRANSITIONS.get(from_label, [])


def is_terminal_label(label: Optional[LifecycleLabel]) -> bool:
    """Check if a label is terminal for orchestrator-initiated moves.

    DONE has no successors. An unmanaged issue is terminal in the sense
    that the orchestrator never starts work on it.
    """
    if label is None:
        return True
    return len(VALID_TRANSITIONS.get(label, [])) == 0


def lifecycle_label_of(labels: Iterable[str]) -> Optional[LifecycleLabel]:
    """Return the first managed label in a label list, or None."""
    for label in labels:
        if label in LIFECYCLE_LABEL_VALUES:
            return LifecycleLabel(label)
    return None


def replace_lifecycle_label(
    labels: Iterable[str],
    new_label: LifecycleLabel,
) -> List[str]:
    """Drop every managed label and append ``new_label``.

    Non-lifecycle labels keep their order.
    """
    kept = [label for label in labels if label not in LIFECYCLE_LABEL_VALUES]
    kept.append(new_label.value)
    return kept
