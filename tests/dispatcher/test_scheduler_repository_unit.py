"""Unit tests for PostgresIssueScheduler against a mocked asyncpg pool.

Verifies the locking query, contention handling, error wrapping and the
upsert/reset statements without a live database.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from src.dispatcher.errors import StoreError
from src.dispatcher.scheduler import PostgresIssueScheduler
from src.dispatcher.tracker.models import Issue


def run_async(coro):
    return asyncio.run(coro)


CREATED = datetime(2024, 1, 1, tzinfo=timezone.utc)
STAMP = datetime(2024, 1, 2, tzinfo=timezone.utc)


class _AsyncContext:
    def __init__(self, value: Any):
        self.value = value

    async def __aenter__(self):
        return self.value

    async def __aexit__(self, exc_type, exc, tb):
        return False


def _row(
    row_id: int,
    issue_id: int,
    project_id: int,
    labels: List[str],
    created_at: datetime = CREATED,
    container_id: Optional[str] = None,
    eligible: bool = True,
) -> Dict[str, Any]:
    return {
        "id": row_id,
        "gitlab_issue_id": issue_id,
        "gitlab_iid": issue_id,
        "project_id": project_id,
        "title": f"Issue {issue_id}",
        "description": "Do the thing",
        "labels": json.dumps(labels),
        "author_username": "alice",
        "web_url": f"https://gitlab.example.com/p/issues/{issue_id}",
        "created_at": created_at,
        "processed_at": created_at,
        "container_id": container_id,
        "eligible": eligible,
    }


@pytest.fixture
def conn():
    connection = MagicMock()
    connection.transaction.return_value = _AsyncContext(None)
    connection.execute = AsyncMock()
    connection.fetch = AsyncMock(return_value=[])
    connection.fetchrow = AsyncMock(return_value=None)
    connection.fetchval = AsyncMock(return_value=None)
    return connection


@pytest.fixture
def store(conn):
    scheduler = PostgresIssueScheduler(
        "postgresql://localhost/test", statement_timeout_seconds=7
    )
    pool = MagicMock()
    pool.acquire.return_value = _AsyncContext(conn)
    scheduler._pool = pool
    return scheduler


# =============================================================================
# Selection
# =============================================================================


class TestSelectProcessableIssues:
    def test_locks_with_nowait_inside_bounded_transaction(self, store, conn):
        run_async(store.select_processable_issues())

        conn.transaction.assert_called_once()
        conn.execute.assert_awaited_once_with("SET LOCAL statement_timeout = '7s'")
        query, labels = conn.fetch.await_args_list[0].args
        assert "FOR UPDATE NOWAIT" in query
        assert "?|" in query
        assert labels == ["TODO", "WIP", "CONFIRM NEEDED"]

    def test_selects_oldest_todo_and_stamps_it(self, store, conn):
        older = _row(1, 101, 10, ["auto-container", "TODO"], created_at=CREATED)
        newer = _row(
            2, 102, 10, ["auto-container", "TODO"],
            created_at=datetime(2024, 1, 5, tzinfo=timezone.utc),
        )
        conn.fetch.side_effect = [
            [older, newer],
            [{"id": 1, "processed_at": STAMP}],
        ]

        selected = run_async(store.select_processable_issues())

        assert [record.issue_id for record in selected] == [101]
        assert selected[0].processed_at == STAMP
        update_query, ids = conn.fetch.await_args_list[1].args
        assert "UPDATE tracked_issues" in update_query
        assert ids == [1]

    def test_ineligible_oldest_todo_is_skipped(self, store, conn):
        stale = _row(1, 101, 10, ["auto-container", "TODO"], eligible=False)
        fresh = _row(
            2, 102, 10, ["auto-container", "TODO"],
            created_at=datetime(2024, 1, 5, tzinfo=timezone.utc),
        )
        conn.fetch.side_effect = [
            [stale, fresh],
            [{"id": 2, "processed_at": STAMP}],
        ]

        selected = run_async(store.select_processable_issues())

        assert [record.issue_id for record in selected] == [102]
        _, ids = conn.fetch.await_args_list[1].args
        assert ids == [2]

    def test_blocked_project_selects_nothing(self, store, conn):
        conn.fetch.return_value = [
            _row(1, 101, 10, ["TODO"]),
            _row(2, 102, 10, ["WIP"]),
        ]

        assert run_async(store.select_processable_issues()) == []
        assert conn.fetch.await_count == 1

    def test_lock_contention_returns_empty(self, store, conn):
        conn.fetch.side_effect = asyncpg.exceptions.LockNotAvailableError(
            "could not obtain lock on row in relation \"tracked_issues\""
        )

        assert run_async(store.select_processable_issues()) == []

    def test_other_failures_raise_store_error(self, store, conn):
        conn.fetch.side_effect = RuntimeError("connection reset")

        with pytest.raises(StoreError) as exc_info:
            run_async(store.select_processable_issues())
        assert isinstance(exc_info.value.original_error, RuntimeError)

    def test_not_connected(self):
        scheduler = PostgresIssueScheduler("postgresql://localhost/test")

        with pytest.raises(StoreError):
            run_async(scheduler.select_processable_issues())


# =============================================================================
# Writes
# =============================================================================


class TestWrites:
    def _issue(self) -> Issue:
        return Issue(
            id=101,
            iid=4,
            project_id=10,
            title="Add feature",
            description="Please add it",
            labels=["auto-container", "TODO"],
            author_username="alice",
            web_url="https://gitlab.example.com/p/issues/4",
            created_at=CREATED,
        )

    def test_mark_processed_upserts_without_touching_labels(self, store, conn):
        run_async(store.mark_processed(self._issue(), "unit-1"))

        query, *args = conn.execute.await_args.args
        assert "ON CONFLICT (gitlab_issue_id) DO UPDATE" in query
        assert "COALESCE" in query
        update_clause = query.split("DO UPDATE SET", 1)[1]
        assert "labels" not in update_clause
        assert args[0] == 101
        assert json.loads(args[5]) == ["auto-container", "TODO"]
        assert args[9] == "unit-1"
        assert args[10] is None

    def test_mark_processed_records_eligibility(self, store, conn):
        run_async(store.mark_processed(self._issue(), eligible=False))

        query, *args = conn.execute.await_args.args
        update_clause = query.split("DO UPDATE SET", 1)[1]
        assert "eligible = COALESCE($11::boolean, tracked_issues.eligible)" in update_clause
        assert args[10] is False

    def test_mark_processed_wraps_errors(self, store, conn):
        conn.execute.side_effect = RuntimeError("boom")

        with pytest.raises(StoreError):
            run_async(store.mark_processed(self._issue()))

    def test_reset_processed_time_clears_container(self, store, conn):
        run_async(store.reset_processed_time(101))

        query, issue_id = conn.execute.await_args.args
        assert "processed_at = created_at" in query
        assert "container_id = NULL" in query
        assert "eligible = TRUE" in query
        assert issue_id == 101

    def test_revert_processing_mark_keeps_container(self, store, conn):
        run_async(store.revert_processing_mark(101))

        query, issue_id = conn.execute.await_args.args
        assert "processed_at = created_at" in query
        assert "container_id" not in query
        assert issue_id == 101

    def test_mark_ineligible_reverts_stamp_and_excludes(self, store, conn):
        run_async(store.mark_ineligible(101))

        query, issue_id = conn.execute.await_args.args
        assert "processed_at = created_at" in query
        assert "eligible = FALSE" in query
        assert "container_id" not in query
        assert issue_id == 101

    def test_update_labels_stores_json(self, store, conn):
        run_async(store.update_labels(101, ["DONE"]))

        _, issue_id, labels = conn.execute.await_args.args
        assert issue_id == 101
        assert json.loads(labels) == ["DONE"]


# =============================================================================
# Reads
# =============================================================================


class TestReads:
    def test_find_by_external_id(self, store, conn):
        conn.fetchrow.return_value = _row(1, 101, 10, ["WIP"], container_id="unit-1")

        record = run_async(store.find_by_external_id(101))

        assert record.issue_id == 101
        assert record.labels == ["WIP"]
        assert record.container_id == "unit-1"

    def test_find_missing_returns_none(self, store, conn):
        assert run_async(store.find_by_container_id("nope")) is None

    def test_processed_ids_cover_everything_but_todo(self, store, conn):
        conn.fetch.return_value = [
            _row(1, 101, 10, ["TODO"]),
            _row(2, 102, 10, ["WIP"]),
            _row(3, 103, 10, ["bug"]),
            _row(4, 104, 20, ["DONE"]),
        ]

        assert run_async(store.get_processed_issue_ids()) == [102, 103, 104]

    def test_blocking_count(self, store, conn):
        conn.fetch.return_value = [
            _row(2, 102, 10, ["WIP"]),
            _row(3, 103, 10, ["CONFIRM NEEDED"]),
        ]

        assert run_async(store.get_project_blocking_count(10)) == 2
        _, project_id, labels = conn.fetch.await_args.args
        assert project_id == 10
        assert set(labels) == {"WIP", "CONFIRM NEEDED"}

    def test_last_check_time_is_timezone_aware(self, store, conn):
        conn.fetchval.return_value = datetime(2024, 1, 2)

        assert run_async(store.get_last_check_time()).tzinfo is not None

    def test_project_and_lifecycle_stats(self, store, conn):
        conn.fetch.return_value = [
            _row(1, 101, 10, ["TODO"]),
            _row(2, 102, 10, ["WIP"]),
            _row(3, 103, 20, ["DONE"]),
            _row(4, 104, 20, ["bug"]),
        ]

        projects = run_async(store.get_project_issue_stats())
        lifecycle = run_async(store.get_lifecycle_stats())

        assert [p.project_id for p in projects] == [10, 20]
        assert projects[0].todo == 1 and projects[0].wip == 1
        assert projects[0].blocking == 1
        assert projects[1].done == 1 and projects[1].unmanaged == 1
        assert lifecycle.counts["DONE"] == 1
        assert lifecycle.total_managed == 3
        assert lifecycle.completion_rate == pytest.approx(1 / 3)

    def test_health_check_failure(self, store, conn):
        conn.fetchval.side_effect = RuntimeError("down")

        assert run_async(store.health_check()) is False
