"""Polling orchestrator tying discovery, scheduling and lifecycle together.

On every tick two sub-cycles run concurrently:

- discovery: fetch triggered issues from GitLab, persist the admitted
  ones, atomically select the next issue of each unblocked project,
  re-validate it and run the container workflow;
- sweep: detect label changes made on GitLab, fire completion listeners
  or reset rejected issues, then retry issues whose backoff elapsed.

Within a sub-cycle issues are handled one at a time. A failure for one
issue never aborts the batch; a failed sub-cycle is logged and the next
tick proceeds.

Source:
- src/dispatcher/scheduler/selection.py (IssueScheduler)
- src/dispatcher/admission.py (ContainerTrigger)
- src/dispatcher/lifecycle/workflow.py (IssueLifecycleWorkflow)
- src/dispatcher/tracker/labels.py (LabelService, IssueTracker)
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from src.dispatcher.admission import ContainerTrigger
from src.dispatcher.events.emitter import EventEmitter, NullEventEmitter
from src.dispatcher.events.metrics import DispatcherMetrics
from src.dispatcher.events.models import DispatchEvent, EventType
from src.dispatcher.lifecycle.workflow import (
    IssueCompletionListener,
    IssueLifecycleWorkflow,
)
from src.dispatcher.retry.coordinator import RetryState
from src.dispatcher.scheduler.models import IssueRecord
from src.dispatcher.scheduler.selection import IssueScheduler
from src.dispatcher.tracker.labels import IssueTracker, LabelService
from src.dispatcher.tracker.models import Issue

logger = logging.getLogger(__name__)


class PollingOrchestrator:
    """Periodic control loop of the dispatcher.

    Lifecycle: stopped → running → stopped. ``start()`` verifies the
    tracker connection, runs one discovery cycle, then arms the timer.
    ``stop()`` only prevents new ticks; a tick in progress finishes.

    Attributes:
        tracker: GitLab client.
        store: Issue store and atomic scheduler.
        container_trigger: Admission rule and container workflow entry.
        label_service: Label capability; None disables lifecycle labels.
        workflow: Lifecycle hooks, retries and completion listeners.
        trigger_labels: Labels that make an issue eligible.
        interval_seconds: Delay between ticks.
        initial_lookback: Discovery window when nothing was seen yet.
    """

    def __init__(
        self,
        tracker: IssueTracker,
        store: IssueScheduler,
        container_trigger: ContainerTrigger,
        label_service: Optional[LabelService] = None,
        workflow: Optional[IssueLifecycleWorkflow] = None,
        trigger_labels: Iterable[str] = ("auto-container",),
        interval_seconds: float = 300.0,
        initial_lookback: timedelta = timedelta(hours=1),
        metrics: Optional[DispatcherMetrics] = None,
        event_emitter: Optional[EventEmitter] = None,
    ):
        self.tracker = tracker
        self.store = store
        self.container_trigger = container_trigger
        self.label_service = label_service
        self.workflow = workflow
        self.trigger_labels = list(trigger_labels)
        self.interval_seconds = interval_seconds
        self.initial_lookback = initial_lookback
        self.metrics = metrics
        self.event_emitter = event_emitter or NullEventEmitter()

        self._running = False
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._last_discovery_at: Optional[datetime] = None
        self._last_sweep_at: Optional[datetime] = None

    @property
    def lifecycle_enabled(self) -> bool:
        return self.label_service is not None and self.workflow is not None

    # -------------------------------------------------------------------------
    # Control surface
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start polling.

        Raises:
            ConnectionError: If the tracker connection test fails.
        """
        if self._running:
            logger.warning("Polling orchestrator already running")
            return

        if not await self.tracker.test_connection():
            raise ConnectionError("Failed to connect to GitLab")

        self._running = True
        stop_event = asyncio.Event()
        self._stop_event = stop_event
        logger.info(
            "Polling orchestrator started",
            extra={
                "interval_seconds": self.interval_seconds,
                "trigger_labels": self.trigger_labels,
                "lifecycle_enabled": self.lifecycle_enabled,
            },
        )

        await self._guarded("discovery", self.poll_once)

        if self._running and not stop_event.is_set():
            self._task = asyncio.create_task(self._loop(stop_event))

    def stop(self) -> None:
        """Stop polling; idempotent."""
        if not self._running:
            return
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        self._task = None
        logger.info("Polling orchestrator stopped")

    def status(self) -> Dict[str, Any]:
        return {"running": self._running, "interval_seconds": self.interval_seconds}

    def on_issue_completion(self, listener: IssueCompletionListener) -> IssueCompletionListener:
        return self._require_workflow().on_issue_completion(listener)

    def off_issue_completion(self, listener: IssueCompletionListener) -> bool:
        return self._require_workflow().off_issue_completion(listener)

    def get_issues_ready_for_retry(self, now: Optional[datetime] = None) -> List[RetryState]:
        if self.workflow is None:
            return []
        return self.workflow.get_issues_ready_for_retry(now)

    def _require_workflow(self) -> IssueLifecycleWorkflow:
        if self.workflow is None:
            raise RuntimeError("Lifecycle management is disabled")
        return self.workflow

    # -------------------------------------------------------------------------
    # Timer
    # -------------------------------------------------------------------------

    async def _loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
            if stop_event.is_set():
                break
            await self.run_cycle()

    async def run_cycle(self) -> None:
        """Run one tick: discovery and sweep concurrently."""
        await asyncio.gather(
            self._guarded("discovery", self.poll_once),
            self._guarded("sweep", self.sweep_once),
        )

    async def _guarded(self, name: str, cycle: Callable[[], Awaitable[None]]) -> None:
        started = time.monotonic()
        try:
            await cycle()
        except Exception:
            logger.exception("Polling cycle failed", extra={"cycle": name})
        finally:
            if self.metrics is not None:
                self.metrics.record_tick_duration(name, time.monotonic() - started)

    async def _window_start(self, last_seen: Optional[datetime]) -> datetime:
        if last_seen is not None:
            return last_seen
        stored = await self.store.get_last_check_time()
        if stored is not None:
            return stored
        return datetime.now(timezone.utc) - self.initial_lookback

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    async def poll_once(self) -> None:
        """Discover new issues and process the selected ones."""
        cycle_started = datetime.now(timezone.utc)
        since = await self._window_start(self._last_discovery_at)

        issues = await self.tracker.fetch_issues_updated_since(since, self.trigger_labels)
        self._last_discovery_at = cycle_started

        processed_ids = set(await self.store.get_processed_issue_ids())
        new_issues = [issue for issue in issues if issue.id not in processed_ids]
        logger.info(
            "Discovered issues",
            extra={
                "since": since.isoformat(),
                "fetched": len(issues),
                "new": len(new_issues),
            },
        )

        if not self.lifecycle_enabled:
            await self._process_legacy(new_issues)
            return

        for issue in new_issues:
            await self._record_discovered(issue)

        selected = await self.store.select_processable_issues()
        if not selected:
            logger.info("No TODO issues to process")
            return

        summary = {"selected": len(selected), "containers": 0, "skipped": 0, "failed": 0}
        for record in selected:
            outcome = await self._process_selected(record)
            summary[outcome] += 1

        await self._log_batch_summary(summary)

    async def _record_discovered(self, issue: Issue) -> None:
        try:
            admitted = self.container_trigger.should_trigger(issue)
            await self.store.mark_processed(issue, eligible=admitted)
            if not admitted:
                logger.info(
                    "Issue recorded without container",
                    extra={"issue_id": issue.id, "labels": issue.labels},
                )
        except Exception:
            logger.exception("Failed to record issue", extra={"issue_id": issue.id})

    async def _process_selected(self, record: IssueRecord) -> str:
        """Re-validate a selected record and run the container workflow.

        Returns:
            "containers", "skipped" or "failed" for the batch summary.
        """
        try:
            blocking = await self.store.get_project_blocking_count(record.project_id)
            if blocking > 0:
                logger.info(
                    "Project became blocked, reverting selection",
                    extra={
                        "issue_id": record.issue_id,
                        "project_id": record.project_id,
                        "blocking": blocking,
                    },
                )
                await self.store.revert_processing_mark(record.issue_id)
                return "skipped"

            issue = await self.tracker.get_issue(record.project_id, record.iid)
            if not self.container_trigger.should_trigger(issue):
                logger.info(
                    "Issue no longer admissible, excluding it from selection",
                    extra={"issue_id": issue.id, "labels": issue.labels},
                )
                await self.store.mark_ineligible(record.issue_id)
                return "skipped"

            await self._emit_admission(issue)
            unit_id = await self.container_trigger.process_issue(issue)
            if unit_id is None:
                await self.store.mark_processed(issue)
                return "failed"
            return "containers"

        except Exception:
            logger.exception(
                "Failed to process selected issue",
                extra={"issue_id": record.issue_id},
            )
            try:
                await self.store.revert_processing_mark(record.issue_id)
            except Exception:
                logger.exception(
                    "Failed to revert processing mark",
                    extra={"issue_id": record.issue_id},
                )
            return "failed"

    async def _process_legacy(self, issues: List[Issue]) -> None:
        """Without lifecycle labels every admitted unseen issue gets a
        container once."""
        for issue in issues:
            try:
                if await self.store.find_by_external_id(issue.id) is not None:
                    continue
                if not self.container_trigger.should_trigger(issue):
                    await self.store.mark_processed(issue)
                    continue
                await self._emit_admission(issue)
                unit_id = await self.container_trigger.process_issue(issue)
                if unit_id is None:
                    await self.store.mark_processed(issue)
            except Exception:
                logger.exception(
                    "Failed to process issue",
                    extra={"issue_id": issue.id},
                )

    async def _emit_admission(self, issue: Issue, retrying: bool = False) -> None:
        try:
            await self.event_emitter.emit(
                DispatchEvent(
                    event_type=EventType.ADMISSION,
                    issue_id=issue.id,
                    project_id=issue.project_id,
                    details={"issue_iid": issue.iid, "retrying": retrying},
                )
            )
        except Exception as e:
            logger.error(
                "Failed to emit dispatch event",
                extra={"event_type": EventType.ADMISSION.value, "issue_id": issue.id, "error": str(e)},
            )

    async def _log_batch_summary(self, summary: Dict[str, int]) -> None:
        try:
            stats = await self.store.get_issue_stats()
            projects = await self.store.get_project_issue_stats()
        except Exception:
            logger.exception("Failed to load issue stats")
            logger.info("Processing completed", extra=summary)
            return

        logger.info(
            "Processing completed",
            extra={**summary, "total_issues": stats.total_issues},
        )
        for project in projects:
            logger.info(
                "Project lifecycle breakdown",
                extra={
                    "project_id": project.project_id,
                    "todo": project.todo,
                    "wip": project.wip,
                    "confirm_needed": project.confirm_needed,
                    "done": project.done,
                    "reject": project.reject,
                },
            )

    # -------------------------------------------------------------------------
    # Label sweep and retries
    # -------------------------------------------------------------------------

    async def sweep_once(self) -> None:
        """Handle label changes made on GitLab, then due retries."""
        if not self.lifecycle_enabled:
            return

        cycle_started = datetime.now(timezone.utc)
        since = await self._window_start(self._last_sweep_at)
        changes = await self.label_service.detect_label_changes(since)
        self._last_sweep_at = cycle_started

        for change in changes:
            try:
                await self.workflow.on_label_change(change)
            except Exception:
                logger.exception(
                    "Failed to handle label change",
                    extra={"issue_id": change.issue.id},
                )

        await self.process_retries()

    async def process_retries(self, now: Optional[datetime] = None) -> None:
        """Re-run the container workflow for issues whose backoff elapsed."""
        for state in self.get_issues_ready_for_retry(now):
            issue: Optional[Issue] = None
            try:
                record = await self.store.find_by_external_id(state.issue_id)
                if record is None:
                    self.workflow.retry_coordinator.reset(state.issue_id)
                    continue

                issue = await self.tracker.get_issue(record.project_id, record.iid)
                if not self.container_trigger.should_trigger(issue, retrying=True):
                    logger.info(
                        "Dropping retry, issue no longer admissible",
                        extra={"issue_id": issue.id, "labels": issue.labels},
                    )
                    self.workflow.retry_coordinator.reset(issue.id)
                    continue

                logger.info(
                    "Retrying container creation",
                    extra={"issue_id": issue.id, "attempt": state.current_attempt + 1},
                )
                await self._emit_admission(issue, retrying=True)
                await self.container_trigger.process_issue(issue, retrying=True)

            except Exception as e:
                logger.exception(
                    "Retry failed",
                    extra={"issue_id": state.issue_id},
                )
                if issue is not None:
                    await self.workflow.on_container_creation_failure(issue, e)
