"""Unit tests for the issue lifecycle workflow.

Covers the container creation hooks, retry escalation, task hooks, label
changes from the tracker and the completion listener registry.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List
from unittest.mock import AsyncMock

import pytest

from src.dispatcher.events.models import EventType
from src.dispatcher.lifecycle import LifecycleLabel
from src.dispatcher.lifecycle.workflow import IssueCompletionEvent, IssueLifecycleWorkflow
from src.dispatcher.retry import RetryCoordinator
from src.dispatcher.scheduler.models import IssueRecord
from src.dispatcher.tracker.labels import LabelService
from src.dispatcher.tracker.models import Issue, LabelChange


def run_async(coro):
    return asyncio.run(coro)


def _issue(labels: List[str]) -> Issue:
    return Issue(
        id=55,
        iid=5,
        project_id=10,
        title="Add feature",
        labels=labels,
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


def _change(previous: List[str], current: List[str]) -> LabelChange:
    return LabelChange(
        issue=_issue(current),
        previous_labels=previous,
        current_labels=current,
    )


@pytest.fixture
def tracker():
    return AsyncMock()


@pytest.fixture
def store():
    mock = AsyncMock()
    mock.find_by_external_id.return_value = IssueRecord(
        issue_id=55,
        iid=5,
        project_id=10,
        labels=["CONFIRM NEEDED"],
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        container_id="unit-9",
    )
    return mock


@pytest.fixture
def emitter():
    return AsyncMock()


@pytest.fixture
def workflow(tracker, store, emitter):
    label_service = LabelService(tracker=tracker, store=store, trigger_labels=["auto-container"])
    return IssueLifecycleWorkflow(
        label_service=label_service,
        store=store,
        retry_coordinator=RetryCoordinator(max_attempts=3),
        event_emitter=emitter,
    )


def _emitted(emitter) -> List[EventType]:
    return [call.args[0].event_type for call in emitter.emit.await_args_list]


# =============================================================================
# Container creation hooks
# =============================================================================


class TestContainerCreationHooks:
    def test_start_moves_todo_to_wip(self, workflow, tracker, store, emitter):
        issue = _issue(["auto-container", "TODO"])

        assert run_async(workflow.on_container_creation_start(issue)) is True

        tracker.update_issue_labels.assert_awaited_once_with(10, 5, ["auto-container", "WIP"])
        store.update_labels.assert_awaited_once_with(55, ["auto-container", "WIP"])
        assert EventType.STATE_TRANSITION in _emitted(emitter)

    def test_start_on_wip_is_rejected_without_raising(self, workflow, tracker):
        issue = _issue(["auto-container", "WIP"])

        assert run_async(workflow.on_container_creation_start(issue)) is False
        tracker.update_issue_labels.assert_not_awaited()

    def test_start_label_failure_propagates(self, workflow, tracker, store):
        tracker.update_issue_labels.side_effect = RuntimeError("403")
        issue = _issue(["auto-container", "TODO"])

        with pytest.raises(RuntimeError):
            run_async(workflow.on_container_creation_start(issue))

        assert issue.lifecycle_label == LifecycleLabel.TODO
        store.update_labels.assert_not_awaited()

    def test_escalation_label_failure_is_absorbed(self, workflow, tracker):
        tracker.update_issue_labels.side_effect = RuntimeError("403")
        issue = _issue(["auto-container", "WIP"])
        coordinator = workflow.retry_coordinator

        for _ in range(coordinator.max_attempts):
            decision = run_async(
                workflow.on_container_creation_failure(issue, RuntimeError("boom"))
            )

        assert decision.should_escalate

    def test_failures_retry_then_escalate_to_reject(self, workflow, tracker, emitter):
        issue = _issue(["auto-container", "WIP"])

        first = run_async(workflow.on_container_creation_failure(issue, RuntimeError("a")))
        second = run_async(workflow.on_container_creation_failure(issue, RuntimeError("b")))
        tracker.update_issue_labels.assert_not_awaited()

        third = run_async(workflow.on_container_creation_failure(issue, RuntimeError("c")))

        assert first.should_retry and second.should_retry
        assert third.should_escalate
        tracker.update_issue_labels.assert_awaited_once_with(10, 5, ["auto-container", "REJECT"])
        assert issue.lifecycle_label == LifecycleLabel.REJECT
        _, _, note = tracker.add_comment.await_args.args
        assert "after 3 attempts: c" in note
        assert _emitted(emitter).count(EventType.RETRY_SCHEDULED) == 2
        assert EventType.ESCALATION in _emitted(emitter)
        assert workflow.retry_coordinator.get_state(55) is None

    def test_success_clears_retry_state(self, workflow):
        issue = _issue(["WIP"])
        run_async(workflow.on_container_creation_failure(issue, RuntimeError("a")))

        run_async(workflow.on_container_creation_success(issue, "unit-1"))

        assert 55 not in workflow.retry_coordinator

    def test_retry_schedule_is_exposed(self, workflow):
        run_async(workflow.on_container_creation_failure(_issue(["WIP"]), RuntimeError("a")))
        later = datetime.now(timezone.utc) + timedelta(minutes=31)

        assert [s.issue_id for s in workflow.get_issues_ready_for_retry(later)] == [55]
        assert workflow.get_issues_ready_for_retry() == []


# =============================================================================
# Task hooks
# =============================================================================


class TestTaskHooks:
    def test_task_completion_moves_to_confirm_needed(self, workflow, tracker):
        issue = _issue(["WIP"])

        assert run_async(workflow.on_task_completion(issue)) is True
        tracker.update_issue_labels.assert_awaited_once_with(10, 5, ["CONFIRM NEEDED"])

    def test_task_failure_rejects_and_resets_retries(self, workflow, tracker, emitter):
        issue = _issue(["WIP"])
        run_async(workflow.on_container_creation_failure(issue, RuntimeError("a")))

        assert run_async(workflow.on_task_execution_failure(issue, RuntimeError("tests failed")))

        assert issue.lifecycle_label == LifecycleLabel.REJECT
        assert 55 not in workflow.retry_coordinator
        assert EventType.ERROR in _emitted(emitter)


# =============================================================================
# Label changes and completion listeners
# =============================================================================


class TestLabelChanges:
    def test_confirm_to_done_notifies_listeners_once(self, workflow, emitter):
        received: List[IssueCompletionEvent] = []

        async def listener(event: IssueCompletionEvent) -> None:
            received.append(event)

        workflow.on_issue_completion(listener)
        workflow.on_issue_completion(listener)

        run_async(workflow.on_label_change(_change(["CONFIRM NEEDED"], ["DONE"])))

        assert len(received) == 1
        assert received[0].container_id == "unit-9"
        assert received[0].issue.id == 55
        assert EventType.COMPLETION in _emitted(emitter)

    def test_failing_listener_does_not_block_others(self, workflow):
        received = []

        async def broken(event):
            raise RuntimeError("listener bug")

        async def healthy(event):
            received.append(event.issue.id)

        workflow.on_issue_completion(broken)
        workflow.on_issue_completion(healthy)

        run_async(workflow.on_label_change(_change(["CONFIRM NEEDED"], ["DONE"])))

        assert received == [55]

    def test_unregistered_listener_is_not_called(self, workflow):
        listener = AsyncMock()
        handle = workflow.on_issue_completion(listener)

        assert workflow.off_issue_completion(handle) is True
        assert workflow.off_issue_completion(handle) is False
        run_async(workflow.on_label_change(_change(["CONFIRM NEEDED"], ["DONE"])))

        listener.assert_not_awaited()

    def test_other_changes_do_not_complete(self, workflow):
        listener = AsyncMock()
        workflow.on_issue_completion(listener)

        run_async(workflow.on_label_change(_change(["WIP"], ["DONE"])))
        run_async(workflow.on_label_change(_change(["TODO"], ["WIP"])))

        listener.assert_not_awaited()

    def test_reject_to_todo_resets_issue(self, workflow, store):
        run_async(workflow.on_container_creation_failure(_issue(["WIP"]), RuntimeError("a")))

        run_async(workflow.on_label_change(_change(["REJECT"], ["TODO"])))

        assert 55 not in workflow.retry_coordinator
        store.reset_processed_time.assert_awaited_once_with(55)

    def test_emitter_failure_is_absorbed(self, workflow, emitter):
        emitter.emit.side_effect = RuntimeError("sink down")
        listener = AsyncMock()
        workflow.on_issue_completion(listener)

        run_async(workflow.on_label_change(_change(["CONFIRM NEEDED"], ["DONE"])))

        listener.assert_awaited_once()
