"""Issue lifecycle workflow.

Hooks called at each step of container creation and task execution, and
the handler for label changes made on the tracker. The workflow owns the
retry coordinator and the registry of issue-completion listeners; both
are instance state, so every orchestrator gets its own.

Source:
- src/dispatcher/tracker/labels.py (LabelService)
- src/dispatcher/retry/coordinator.py (RetryCoordinator)
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from src.dispatcher.events.emitter import EventEmitter, NullEventEmitter
from src.dispatcher.events.models import DispatchEvent, EventType
from src.dispatcher.lifecycle.models import LifecycleLabel, TransitionOrigin
from src.dispatcher.retry.coordinator import (
    RetryCoordinator,
    RetryDecision,
    RetryState,
)
from src.dispatcher.scheduler.selection import IssueScheduler
from src.dispatcher.tracker.labels import LabelService
from src.dispatcher.tracker.models import Issue, LabelChange


logger = logging.getLogger(__name__)


class IssueCompletionEvent(BaseModel):
    """Fired once when an issue moves from CONFIRM NEEDED to DONE."""

    issue: Issue
    container_id: Optional[str] = Field(
        default=None,
        description="Compute unit that worked on the issue, if recorded",
    )
    completed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )


IssueCompletionListener = Callable[[IssueCompletionEvent], Awaitable[None]]


class IssueLifecycleWorkflow:
    """Lifecycle hooks, retry escalation and completion fan-out.

    Attributes:
        label_service: Applies label transitions on the tracker.
        store: Issue store, used for container lookups and resets.
        retry_coordinator: Per-issue retry bookkeeping.
        event_emitter: Sink for dispatch events.
    """

    def __init__(
        self,
        label_service: LabelService,
        store: IssueScheduler,
        retry_coordinator: Optional[RetryCoordinator] = None,
        event_emitter: Optional[EventEmitter] = None,
    ):
        self.label_service = label_service
        self.store = store
        self.retry_coordinator = retry_coordinator or RetryCoordinator()
        self.event_emitter = event_emitter or NullEventEmitter()
        self._completion_listeners: Dict[IssueCompletionListener, None] = {}

    # -------------------------------------------------------------------------
    # Completion listeners
    # -------------------------------------------------------------------------

    def on_issue_completion(
        self,
        listener: IssueCompletionListener,
    ) -> IssueCompletionListener:
        """Register a completion listener; registering twice is a no-op.

        Returns:
            The listener, usable as the handle for off_issue_completion.
        """
        self._completion_listeners[listener] = None
        return listener

    def off_issue_completion(self, listener: IssueCompletionListener) -> bool:
        """Unregister a listener. Returns False if it was not registered."""
        if listener not in self._completion_listeners:
            return False
        del self._completion_listeners[listener]
        return True

    @property
    def completion_listeners(self) -> List[IssueCompletionListener]:
        return list(self._completion_listeners)

    async def _notify_completion(self, event: IssueCompletionEvent) -> None:
        async def call(listener: IssueCompletionListener) -> None:
            try:
                await listener(event)
            except Exception:
                logger.exception(
                    "Issue completion listener failed",
                    extra={
                        "issue_id": event.issue.id,
                        "listener": getattr(listener, "__name__", repr(listener)),
                    },
                )

        await asyncio.gather(*(call(listener) for listener in self.completion_listeners))

    # -------------------------------------------------------------------------
    # Container creation hooks
    # -------------------------------------------------------------------------

    async def on_container_creation_start(self, issue: Issue) -> bool:
        """Move the issue TODO → WIP before provisioning starts.

        A move the table rejects (a retry already in WIP) returns False.

        Raises:
            Exception: Whatever the tracker raised for the label write, so
                the container workflow fails before provisioning.
        """
        return await self._transition(
            issue,
            LifecycleLabel.WIP,
            "Container creation started",
            raise_on_error=True,
        )

    async def on_container_creation_success(self, issue: Issue, container_id: str) -> None:
        """Clear retry state once a container is up for the issue."""
        self.retry_coordinator.record_success(issue.id)
        logger.info(
            "Container created for issue",
            extra={"issue_id": issue.id, "container_id": container_id},
        )

    async def on_container_creation_failure(
        self,
        issue: Issue,
        error: BaseException,
    ) -> RetryDecision:
        """Record the failure and escalate to REJECT when retries run out."""
        decision = self.retry_coordinator.record_failure(issue.id, error)

        if decision.should_escalate:
            await self._emit(
                EventType.ESCALATION,
                issue,
                {"attempt": decision.attempt, "error": str(error)},
            )
            current = self.label_service.current_lifecycle_label(issue)
            if self.label_service.is_valid_transition(current, LifecycleLabel.REJECT):
                await self._transition(
                    issue,
                    LifecycleLabel.REJECT,
                    f"Container creation failed after {decision.attempt} "
                    f"attempts: {error}",
                    TransitionOrigin.ERROR,
                )
        else:
            await self._emit(
                EventType.RETRY_SCHEDULED,
                issue,
                {
                    "attempt": decision.attempt,
                    "next_retry_at": (
                        decision.next_retry_at.isoformat()
                        if decision.next_retry_at
                        else None
                    ),
                    "error": str(error),
                },
            )
        return decision

    # -------------------------------------------------------------------------
    # Task hooks, driven by POST /api/containers/{id}/report
    # -------------------------------------------------------------------------

    async def on_task_completion(self, issue: Issue) -> bool:
        """The agent finished: WIP → CONFIRM NEEDED."""
        return await self._transition(
            issue,
            LifecycleLabel.CONFIRM_NEEDED,
            "Task completed, waiting for confirmation",
        )

    async def on_task_execution_failure(self, issue: Issue, error: BaseException) -> bool:
        """The agent failed the task: reject without retrying."""
        self.retry_coordinator.reset(issue.id)
        await self._emit(
            EventType.ERROR,
            issue,
            {"stage": "task_execution", "error_message": str(error)},
        )
        return await self._transition(
            issue,
            LifecycleLabel.REJECT,
            f"Task execution failed: {error}",
            TransitionOrigin.ERROR,
        )

    # -------------------------------------------------------------------------
    # Label changes from the tracker
    # -------------------------------------------------------------------------

    async def on_label_change(self, change: LabelChange) -> None:
        """React to a label change made on the tracker.

        CONFIRM NEEDED → DONE fires the completion listeners.
        REJECT → TODO clears retry state and makes the issue schedulable
        again from scratch.
        """
        previous = change.previous_lifecycle_label
        current = change.current_lifecycle_label
        issue = change.issue

        logger.info(
            "Lifecycle label changed on tracker",
            extra={
                "issue_id": issue.id,
                "from_label": previous.value if previous else None,
                "to_label": current.value if current else None,
                "change_type": change.change_type.value,
            },
        )

        if previous == LifecycleLabel.CONFIRM_NEEDED and current == LifecycleLabel.DONE:
            await self._handle_completion(issue)
        elif previous == LifecycleLabel.REJECT and current == LifecycleLabel.TODO:
            self.retry_coordinator.reset(issue.id)
            await self.store.reset_processed_time(issue.id)

    async def _handle_completion(self, issue: Issue) -> None:
        record = await self.store.find_by_external_id(issue.id)
        container_id = record.container_id if record is not None else None
        event = IssueCompletionEvent(issue=issue, container_id=container_id)

        await self._emit(EventType.COMPLETION, issue, {"container_id": container_id})
        await self._notify_completion(event)

    def get_issues_ready_for_retry(self, now: Optional[datetime] = None) -> List[RetryState]:
        return self.retry_coordinator.due_for_retry(now)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _transition(
        self,
        issue: Issue,
        label: LifecycleLabel,
        reason: str,
        origin: TransitionOrigin = TransitionOrigin.SYSTEM,
        raise_on_error: bool = False,
    ) -> bool:
        previous = issue.lifecycle_label
        try:
            changed = await self.label_service.update_lifecycle_label(
                issue, label, reason, origin
            )
        except Exception:
            logger.exception(
                "Failed to update lifecycle label",
                extra={"issue_id": issue.id, "to_label": label.value},
            )
            if raise_on_error:
                raise
            return False

        if changed:
            await self._sync_snapshot(issue)
            await self._emit(
                EventType.STATE_TRANSITION,
                issue,
                {
                    "from_label": previous.value if previous else None,
                    "to_label": label.value,
                    "reason": reason,
                },
            )
        return changed

    async def _sync_snapshot(self, issue: Issue) -> None:
        """Keep the stored label snapshot in step with labels set here."""
        try:
            await self.store.update_labels(issue.id, list(issue.labels))
        except Exception as e:
            logger.error(
                "Failed to store label snapshot",
                extra={"issue_id": issue.id, "error": str(e)},
            )

    async def _emit(self, event_type: EventType, issue: Issue, details: dict) -> None:
        try:
            await self.event_emitter.emit(
                DispatchEvent(
                    event_type=event_type,
                    issue_id=issue.id,
                    project_id=issue.project_id,
                    details=details,
                )
            )
        except Exception as e:
            logger.error(
                "Failed to emit dispatch event",
                extra={"event_type": event_type.value, "issue_id": issue.id, "error": str(e)},
            )
