"""PostgreSQL issue store and atomic scheduler.

This module implements the IssueScheduler protocol using asyncpg. It
provides:
- Connection pooling for production use
- Atomic selection under ``FOR UPDATE NOWAIT`` row locks
- Upserts keyed by the tracker's issue id
- Statistics queries for the HTTP surface

Source:
- migrations/001_tracked_issues.sql (schema definition)
- src/dispatcher/scheduler/selection.py (IssueScheduler protocol)
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from src.dispatcher.errors import ContentionError, StoreError
from src.dispatcher.lifecycle.models import (
    BLOCKING_LABELS,
    SCHEDULABLE_LABELS,
    LifecycleLabel,
    lifecycle_label_of,
)
from src.dispatcher.scheduler.models import (
    IssueRecord,
    IssueStats,
    LifecycleStats,
    ProjectIssueStats,
)
from src.dispatcher.scheduler.selection import select_oldest_unblocked
from src.dispatcher.tracker.models import Issue


logger = logging.getLogger(__name__)


_RECORD_COLUMNS = """
    id,
    gitlab_issue_id,
    gitlab_iid,
    project_id,
    title,
    description,
    labels,
    author_username,
    web_url,
    created_at,
    processed_at,
    container_id,
    eligible
"""


class PostgresIssueScheduler:
    """PostgreSQL implementation of the IssueScheduler protocol.

    Selection runs in a single transaction with a statement timeout. All
    rows carrying a schedulable label are locked with ``NOWAIT``; if any
    lock is held by a concurrent pass the cycle selects nothing.

    Attributes:
        connection_string: PostgreSQL connection URL.
        statement_timeout_seconds: Bound for the selection transaction.
        min_pool_size: Minimum connections in pool.
        max_pool_size: Maximum connections in pool.

    Example:
        >>> async with PostgresIssueScheduler("postgresql://...") as store:
        ...     selected = await store.select_processable_issues()
    """

    def __init__(
        self,
        connection_string: str,
        statement_timeout_seconds: int = 10,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.connection_string = connection_string
        self.statement_timeout_seconds = statement_timeout_seconds
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool, raising if not connected.

        Raises:
            StoreError: If the pool is not initialized.
        """
        if self._pool is None:
            raise StoreError("Database pool not initialized. Call connect() first.")
        return self._pool

    async def connect(self) -> None:
        """Initialize the connection pool.

        Raises:
            StoreError: If connection fails.
        """
        if self._pool is not None:
            logger.warning("Connection pool already initialized")
            return

        try:
            logger.info(
                "Connecting to PostgreSQL",
                extra={
                    "min_pool_size": self.min_pool_size,
                    "max_pool_size": self.max_pool_size,
                },
            )
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
            logger.info("PostgreSQL connection pool established")
        except Exception as e:
            logger.error("Failed to connect to PostgreSQL", extra={"error": str(e)})
            raise StoreError(
                f"Failed to connect to PostgreSQL: {e}",
                original_error=e,
            ) from e

    async def disconnect(self) -> None:
        """Close the connection pool."""
        if self._pool is not None:
            logger.info("Closing PostgreSQL connection pool")
            await self._pool.close()
            self._pool = None
            logger.info("PostgreSQL connection pool closed")

    async def __aenter__(self) -> "PostgresIssueScheduler":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Create a transaction context for atomic operations."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    def _wrap(self, action: str, error: Exception, **context: Any) -> StoreError:
        logger.error(
            f"Failed to {action}",
            extra={**context, "error": str(error)},
        )
        return StoreError(f"Failed to {action}: {error}", original_error=error)

    # -------------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------------

    async def select_processable_issues(self) -> List[IssueRecord]:
        """Atomically admit the oldest TODO issue of each unblocked project.

        Steps, all inside one transaction:
        1. Bound the transaction with ``SET LOCAL statement_timeout``.
        2. Lock every row carrying TODO, WIP or CONFIRM NEEDED with
           ``FOR UPDATE NOWAIT``, ordered by project then creation time.
        3. Select from the locked snapshot only (selection.py).
        4. Stamp ``processed_at = NOW()`` on the selected rows.

        Returns:
            The selected records with their new ``processed_at``. Empty if
            another pass holds the locks.

        Raises:
            StoreError: On any failure other than lock contention.
        """
        try:
            async with self._transaction() as conn:
                await conn.execute(
                    f"SET LOCAL statement_timeout = "
                    f"'{int(self.statement_timeout_seconds)}s'"
                )
                try:
                    rows = await conn.fetch(
                        f"""
                        SELECT {_RECORD_COLUMNS}
                        FROM tracked_issues
                        WHERE labels::jsonb ?| $1::text[]
                        ORDER BY project_id ASC, created_at ASC
                        FOR UPDATE NOWAIT
                        """,
                        [label.value for label in SCHEDULABLE_LABELS],
                    )
                except asyncpg.LockNotAvailableError as e:
                    raise ContentionError(
                        "Issue rows are locked by another scheduling pass",
                        original_error=e,
                    ) from e

                records = [IssueRecord.from_row(row) for row in rows]
                selected = select_oldest_unblocked(records)
                if not selected:
                    logger.debug(
                        "No processable issues",
                        extra={"locked_rows": len(records)},
                    )
                    return []

                stamped = await conn.fetch(
                    """
                    UPDATE tracked_issues
                    SET processed_at = NOW()
                    WHERE id = ANY($1::bigint[])
                    RETURNING id, processed_at
                    """,
                    [record.record_id for record in selected],
                )
                stamps = {row["id"]: row["processed_at"] for row in stamped}
                for record in selected:
                    processed_at = stamps.get(record.record_id)
                    if processed_at is not None:
                        if processed_at.tzinfo is None:
                            processed_at = processed_at.replace(tzinfo=timezone.utc)
                        record.processed_at = processed_at

                logger.info(
                    "Selected processable issues",
                    extra={
                        "locked_rows": len(records),
                        "selected": len(selected),
                        "issue_ids": [record.issue_id for record in selected],
                    },
                )
                return selected

        except ContentionError:
            logger.info("Scheduling skipped, rows locked by another pass")
            return []
        except StoreError:
            raise
        except Exception as e:
            raise self._wrap("select processable issues", e) from e

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def mark_processed(
        self,
        issue: Issue,
        container_id: Optional[str] = None,
        eligible: Optional[bool] = None,
    ) -> None:
        """Upsert the issue's record with ``processed_at = NOW()``.

        On conflict only ``processed_at``, ``container_id`` and ``eligible``
        change; the stored label snapshot is owned by label sync. A missing
        ``container_id`` or ``eligible`` keeps the stored value.

        Raises:
            StoreError: If the upsert fails.
        """
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO tracked_issues (
                        gitlab_issue_id,
                        gitlab_iid,
                        project_id,
                        title,
                        description,
                        labels,
                        author_username,
                        web_url,
                        created_at,
                        processed_at,
                        container_id,
                        eligible
                    ) VALUES (
                        $1, $2, $3, $4, $5, $6, $7, $8, $9, NOW(), $10,
                        COALESCE($11::boolean, TRUE)
                    )
                    ON CONFLICT (gitlab_issue_id) DO UPDATE SET
                        processed_at = NOW(),
                        container_id = COALESCE(
                            EXCLUDED.container_id,
                            tracked_issues.container_id
                        ),
                        eligible = COALESCE($11::boolean, tracked_issues.eligible)
                    """,
                    issue.id,
                    issue.iid,
                    issue.project_id,
                    issue.title,
                    issue.description,
                    json.dumps(issue.labels),
                    issue.author_username or None,
                    issue.web_url,
                    issue.created_at,
                    container_id,
                    eligible,
                )
            logger.debug(
                "Marked issue processed",
                extra={
                    "issue_id": issue.id,
                    "container_id": container_id,
                    "eligible": eligible,
                },
            )
        except Exception as e:
            raise self._wrap("mark issue processed", e, issue_id=issue.id) from e

    async def reset_processed_time(self, issue_id: int) -> None:
        """Restore ``processed_at = created_at``, clear ``container_id`` and
        make the record eligible again.

        Used after a REJECT → TODO reset so the issue is reprocessed from
        scratch.
        """
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    UPDATE tracked_issues
                    SET processed_at = created_at, container_id = NULL, eligible = TRUE
                    WHERE gitlab_issue_id = $1
                    """,
                    issue_id,
                )
            logger.info("Reset issue processing time", extra={"issue_id": issue_id})
        except Exception as e:
            raise self._wrap("reset processed time", e, issue_id=issue_id) from e

    async def revert_processing_mark(self, issue_id: int) -> None:
        """Undo a selection stamp for a record that failed re-validation."""
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    UPDATE tracked_issues
                    SET processed_at = created_at
                    WHERE gitlab_issue_id = $1
                    """,
                    issue_id,
                )
            logger.info("Reverted processing mark", extra={"issue_id": issue_id})
        except Exception as e:
            raise self._wrap("revert processing mark", e, issue_id=issue_id) from e

    async def mark_ineligible(self, issue_id: int) -> None:
        """Undo a selection stamp and exclude the record from selection.

        For TODO records that no longer pass admission. The flag clears
        when discovery sees the issue admitted again or on a reset.
        """
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    UPDATE tracked_issues
                    SET processed_at = created_at, eligible = FALSE
                    WHERE gitlab_issue_id = $1
                    """,
                    issue_id,
                )
            logger.info("Marked issue ineligible", extra={"issue_id": issue_id})
        except Exception as e:
            raise self._wrap("mark issue ineligible", e, issue_id=issue_id) from e

    async def update_labels(self, issue_id: int, labels: List[str]) -> None:
        """Replace the stored label snapshot and touch ``processed_at``."""
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    UPDATE tracked_issues
                    SET labels = $2, processed_at = NOW()
                    WHERE gitlab_issue_id = $1
                    """,
                    issue_id,
                    json.dumps(labels),
                )
        except Exception as e:
            raise self._wrap("update issue labels", e, issue_id=issue_id) from e

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def find_by_external_id(self, issue_id: int) -> Optional[IssueRecord]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT {_RECORD_COLUMNS}
                    FROM tracked_issues
                    WHERE gitlab_issue_id = $1
                    """,
                    issue_id,
                )
            return IssueRecord.from_row(row) if row is not None else None
        except Exception as e:
            raise self._wrap("find issue record", e, issue_id=issue_id) from e

    async def find_by_container_id(self, container_id: str) -> Optional[IssueRecord]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT {_RECORD_COLUMNS}
                    FROM tracked_issues
                    WHERE container_id = $1
                    ORDER BY processed_at DESC
                    LIMIT 1
                    """,
                    container_id,
                )
            return IssueRecord.from_row(row) if row is not None else None
        except Exception as e:
            raise self._wrap(
                "find issue record by container", e, container_id=container_id
            ) from e

    async def get_processed_issue_ids(self) -> List[int]:
        """Issue ids that discovery skips: every stored issue not in TODO.

        Rows without a lifecycle label count as processed; they come back
        through the label sweep once someone labels them TODO.
        """
        rows = await self._fetch_labels("get processed issue ids")
        return [
            row["gitlab_issue_id"]
            for row in rows
            if _label_of(row) != LifecycleLabel.TODO
        ]

    async def get_last_check_time(self) -> Optional[datetime]:
        try:
            async with self.pool.acquire() as conn:
                value = await conn.fetchval(
                    "SELECT MAX(processed_at) FROM tracked_issues"
                )
        except Exception as e:
            raise self._wrap("get last check time", e) from e
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    async def get_project_blocking_count(self, project_id: int) -> int:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT gitlab_issue_id, project_id, labels
                    FROM tracked_issues
                    WHERE project_id = $1 AND labels::jsonb ?| $2::text[]
                    """,
                    project_id,
                    [label.value for label in BLOCKING_LABELS],
                )
        except Exception as e:
            raise self._wrap(
                "get project blocking count", e, project_id=project_id
            ) from e
        return sum(1 for row in rows if _label_of(row) in BLOCKING_LABELS)

    async def get_issue_stats(self) -> IssueStats:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT
                        COUNT(*) AS total_issues,
                        COUNT(*) FILTER (
                            WHERE created_at > NOW() - INTERVAL '7 days'
                        ) AS recent_issues,
                        COUNT(container_id) AS issues_with_containers
                    FROM tracked_issues
                    """
                )
        except Exception as e:
            raise self._wrap("get issue stats", e) from e
        return IssueStats(
            total_issues=row["total_issues"],
            recent_issues=row["recent_issues"],
            issues_with_containers=row["issues_with_containers"],
        )

    async def get_project_issue_stats(self) -> List[ProjectIssueStats]:
        rows = await self._fetch_labels("get project issue stats")
        by_project: Dict[int, ProjectIssueStats] = {}
        for row in rows:
            stats = by_project.setdefault(
                row["project_id"],
                ProjectIssueStats(project_id=row["project_id"]),
            )
            stats.total_issues += 1
            label = _label_of(row)
            if label is None:
                stats.unmanaged += 1
            else:
                field = label.name.lower()
                setattr(stats, field, getattr(stats, field) + 1)
        return [by_project[key] for key in sorted(by_project)]

    async def get_lifecycle_stats(self) -> LifecycleStats:
        rows = await self._fetch_labels("get lifecycle stats")
        counts: Dict[str, int] = {}
        for row in rows:
            label = _label_of(row)
            if label is not None:
                counts[label.value] = counts.get(label.value, 0) + 1
        return LifecycleStats.from_counts(counts)

    async def health_check(self) -> bool:
        """Check if the database connection is healthy."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.warning("Database health check failed", extra={"error": str(e)})
            return False

    async def _fetch_labels(self, action: str) -> List[Any]:
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetch(
                    "SELECT gitlab_issue_id, project_id, labels FROM tracked_issues"
                )
        except Exception as e:
            raise self._wrap(action, e) from e


def _label_of(row: Any) -> Optional[LifecycleLabel]:
    labels = row["labels"]
    if isinstance(labels, str):
        labels = json.loads(labels) if labels else []
    return lifecycle_label_of(labels or [])
