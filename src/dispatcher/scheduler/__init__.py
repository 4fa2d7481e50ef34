"""Issue store and per-project exclusive scheduling.

At most one issue per project is in flight (WIP or CONFIRM NEEDED).
Selection locks every schedulable row in PostgreSQL and admits the oldest
TODO issue of each unblocked project.
"""

from src.dispatcher.scheduler.models import (
    IssueRecord,
    IssueStats,
    LifecycleStats,
    ProjectIssueStats,
)
from src.dispatcher.scheduler.repository import PostgresIssueScheduler
from src.dispatcher.scheduler.selection import (
    IssueScheduler,
    blocking_counts,
    select_oldest_unblocked,
)

__all__ = [
    # Models
    "IssueRecord",
    "IssueStats",
    "LifecycleStats",
    "ProjectIssueStats",
    # Selection
    "IssueScheduler",
    "blocking_counts",
    "select_oldest_unblocked",
    # Repository
    "PostgresIssueScheduler",
]
