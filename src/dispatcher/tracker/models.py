"""Tracker-side models for GitLab issues and label changes."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from src.dispatcher.lifecycle.models import LifecycleLabel, lifecycle_label_of


class Issue(BaseModel):
    """Cached projection of a GitLab issue.

    The tracker owns the issue; the dispatcher only reads it and edits its
    labels. ``id`` is the instance-wide identity, ``iid`` the
    project-local number shown in the UI.
    """

    id: int = Field(..., description="Instance-wide issue identity")
    iid: int = Field(..., description="Project-local issue number")
    project_id: int = Field(..., description="Owning project identity")
    title: str = Field(default="", description="Issue title")
    description: Optional[str] = Field(
        default=None,
        description="Issue body in markdown",
    )
    state: str = Field(default="opened", description="opened or closed")
    labels: List[str] = Field(
        default_factory=list,
        description="Free-form label list, lifecycle labels included",
    )
    confidential: bool = Field(default=False, description="Confidential flag")
    author_username: str = Field(default="", description="Author's username")
    web_url: str = Field(default="", description="Browser URL of the issue")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the issue was created",
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the issue was last updated",
    )

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Issue":
        """Build an Issue from a GitLab REST API issue payload."""
        author = data.get("author") or {}
        return cls(
            id=data["id"],
            iid=data["iid"],
            project_id=data["project_id"],
            title=data.get("title") or "",
            description=data.get("description"),
            state=data.get("state") or "opened",
            labels=list(data.get("labels") or []),
            confidential=bool(data.get("confidential", False)),
            author_username=author.get("username") or "",
            web_url=data.get("web_url") or "",
            created_at=data["created_at"],
            updated_at=data.get("updated_at") or data["created_at"],
        )

    @property
    def lifecycle_label(self) -> Optional[LifecycleLabel]:
        """The issue's current managed label, if any."""
        return lifecycle_label_of(self.labels)

    @property
    def is_open(self) -> bool:
        return self.state == "opened"


class LabelChangeType(str, Enum):
    """Shape of a label set change between two observations."""

    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"


class LabelChange(BaseModel):
    """A label set change detected between the stored snapshot and the
    tracker."""

    issue: Issue
    previous_labels: List[str] = Field(default_factory=list)
    current_labels: List[str] = Field(default_factory=list)
    changed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    change_type: LabelChangeType = LabelChangeType.MODIFIED

    @property
    def previous_lifecycle_label(self) -> Optional[LifecycleLabel]:
        return lifecycle_label_of(self.previous_labels)

    @property
    def current_lifecycle_label(self) -> Optional[LifecycleLabel]:
        return lifecycle_label_of(self.current_labels)


def classify_label_change(
    previous: List[str],
    current: List[str],
) -> LabelChangeType:
    """Classify a change as a pure addition, a pure removal or a mix."""
    before = set(previous)
    after = set(current)
    if before < after:
        return LabelChangeType.ADDED
    if after < before:
        return LabelChangeType.REMOVED
    return LabelChangeType.MODIFIED
