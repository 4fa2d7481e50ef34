"""Dispatch event models for observability.

This module defines the data models for dispatcher events, including:
- EventType: Enum of all event types emitted by the dispatcher
- DispatchEvent: Structured event with issue identity and details

Events are emitted for monitoring, alerting, and debugging purposes.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of events emitted by the dispatcher.

    Attributes:
        STATE_TRANSITION: A lifecycle label was changed.
        ADMISSION: An issue was selected for a container.
        RETRY_SCHEDULED: A failed attempt was scheduled for retry.
        ESCALATION: Retries were exhausted; the issue is rejected.
        COMPLETION: An issue was confirmed DONE.
        ERROR: A per-issue or per-cycle failure.
    """

    STATE_TRANSITION = "state_transition"
    ADMISSION = "admission"
    RETRY_SCHEDULED = "retry_scheduled"
    ESCALATION = "escalation"
    COMPLETION = "completion"
    ERROR = "error"


class DispatchEvent(BaseModel):
    """Structured event emitted by the dispatcher.

    Attributes:
        event_type: The category of event.
        issue_id: Instance-wide issue identity.
        project_id: Owning project identity, when known.
        timestamp: When the event occurred (UTC timezone).
        details: Additional context specific to the event type.

    Details Field Conventions:
        STATE_TRANSITION: from_label, to_label, reason
        ADMISSION: issue_iid
        RETRY_SCHEDULED: attempt, next_retry_at, error
        ESCALATION: attempt, error
        COMPLETION: container_id
        ERROR: stage, error_message
    """

    event_type: EventType = Field(
        ...,
        description="The category of event being emitted",
    )

    issue_id: int = Field(
        ...,
        description="Instance-wide issue identity",
    )

    project_id: Optional[int] = Field(
        default=None,
        description="Owning project identity",
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Flatten the event for structured logging."""
        return {
            "event_type": self.event_type.value,
            "issue_id": self.issue_id,
            "project_id": self.project_id,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }
