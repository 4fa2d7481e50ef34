"""Issue lifecycle labels and transitions.

Labels move TODO → WIP → CONFIRM NEEDED → DONE, with REJECT reachable
from every non-terminal label and a manual REJECT → TODO reset.

The state machine and workflow live in ``lifecycle.machine`` and
``lifecycle.workflow``; they depend on the tracker models, which in turn
depend on the label models exported here.
"""

from src.dispatcher.lifecycle.models import (
    BLOCKING_LABELS,
    LIFECYCLE_LABEL_VALUES,
    SCHEDULABLE_LABELS,
    VALID_TRANSITIONS,
    LifecycleLabel,
    LifecycleTransition,
    TransitionOrigin,
    is_terminal_label,
    is_valid_transition,
    lifecycle_label_of,
    replace_lifecycle_label,
)

__all__ = [
    "BLOCKING_LABELS",
    "LIFECYCLE_LABEL_VALUES",
    "SCHEDULABLE_LABELS",
    "VALID_TRANSITIONS",
    "LifecycleLabel",
    "LifecycleTransition",
    "TransitionOrigin",
    "is_terminal_label",
    "is_valid_transition",
    "lifecycle_label_of",
    "replace_lifecycle_label",
]
