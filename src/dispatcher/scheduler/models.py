"""Persisted issue records and statistics models.

Source:
- migrations/001_tracked_issues.sql (schema definition)
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

from src.dispatcher.lifecycle.models import LifecycleLabel, lifecycle_label_of
from src.dispatcher.tracker.models import Issue


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class IssueRecord(BaseModel):
    """Persisted projection of an issue plus orchestration metadata.

    Created on first sighting, updated on every scheduling decision or
    label sync, never deleted.

    Attributes:
        record_id: Surrogate key of the row.
        issue_id: Instance-wide issue identity (unique).
        iid: Project-local issue number.
        project_id: Owning project identity.
        title: Issue title at last sync.
        description: Issue body at last sync.
        labels: Label snapshot at last sync.
        author_username: Issue author.
        web_url: Browser URL of the issue.
        created_at: Issue creation time on the tracker.
        processed_at: Last time the scheduler touched the record.
        container_id: Compute unit provisioned for the issue, if any.
        eligible: False when the issue failed admission while in TODO;
            selection passes over it until it is rediscovered or reset.
    """

    record_id: Optional[int] = Field(default=None, description="Row surrogate key")
    issue_id: int = Field(..., description="Instance-wide issue identity")
    iid: int = Field(..., description="Project-local issue number")
    project_id: int = Field(..., description="Owning project identity")
    title: str = Field(default="", description="Issue title at last sync")
    description: Optional[str] = Field(default=None, description="Issue body")
    labels: List[str] = Field(default_factory=list, description="Label snapshot")
    author_username: Optional[str] = Field(default=None, description="Issue author")
    web_url: str = Field(default="", description="Browser URL of the issue")
    created_at: datetime = Field(..., description="Issue creation time")
    processed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Last time the scheduler touched the record",
    )
    container_id: Optional[str] = Field(
        default=None,
        description="Compute unit provisioned for the issue",
    )
    eligible: bool = Field(
        default=True,
        description="Whether a TODO record may win selection",
    )

    @property
    def lifecycle_label(self) -> Optional[LifecycleLabel]:
        return lifecycle_label_of(self.labels)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "IssueRecord":
        """Build a record from a ``tracked_issues`` row."""
        labels = row["labels"]
        if isinstance(labels, str):
            labels = json.loads(labels) if labels else []
        return cls(
            record_id=row["id"],
            issue_id=row["gitlab_issue_id"],
            iid=row["gitlab_iid"],
            project_id=row["project_id"],
            title=row["title"] or "",
            description=row["description"],
            labels=list(labels or []),
            author_username=row["author_username"],
            web_url=row["web_url"] or "",
            created_at=_aware(row["created_at"]),
            processed_at=_aware(row["processed_at"]),
            container_id=row["container_id"],
            eligible=row["eligible"],
        )

    @classmethod
    def from_issue(
        cls,
        issue: Issue,
        processed_at: Optional[datetime] = None,
        container_id: Optional[str] = None,
    ) -> "IssueRecord":
        """Project a tracker issue into a fresh record."""
        return cls(
            issue_id=issue.id,
            iid=issue.iid,
            project_id=issue.project_id,
            title=issue.title,
            description=issue.description,
            labels=list(issue.labels),
            author_username=issue.author_username or None,
            web_url=issue.web_url,
            created_at=issue.created_at,
            processed_at=processed_at or datetime.now(timezone.utc),
            container_id=container_id,
        )


class IssueStats(BaseModel):
    """Totals over all tracked issues."""

    total_issues: int = 0
    recent_issues: int = Field(
        default=0,
        description="Issues created in the last 7 days",
    )
    issues_with_containers: int = 0


class ProjectIssueStats(BaseModel):
    """Lifecycle breakdown for one project."""

    project_id: int
    total_issues: int = 0
    todo: int = 0
    wip: int = 0
    confirm_needed: int = 0
    done: int = 0
    reject: int = 0
    unmanaged: int = 0

    @property
    def blocking(self) -> int:
        return self.wip + self.confirm_needed


class LifecycleStats(BaseModel):
    """Counts per lifecycle label across all projects."""

    counts: Dict[str, int] = Field(default_factory=dict)
    total_managed: int = 0
    completion_rate: float = Field(
        default=0.0,
        description="DONE issues over all managed issues, 0..1",
    )

    @classmethod
    def from_counts(cls, counts: Dict[str, int]) -> "LifecycleStats":
        full = {label.value: counts.get(label.value, 0) for label in LifecycleLabel}
        total = sum(full.values())
        done = full[LifecycleLabel.DONE.value]
        return cls(
            counts=full,
            total_managed=total,
            completion_rate=(done / total) if total else 0.0,
        )
