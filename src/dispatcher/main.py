"""FastAPI application entry point for the issue dispatcher.

The polling orchestrator is started in the application lifespan and
stopped on shutdown. The HTTP surface exposes probes, Prometheus metrics,
orchestrator status, issue statistics and the endpoint agent containers
call to report the outcome of their task.
"""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Literal, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from .admission import ContainerTrigger
from .config import DispatcherSettings, get_settings
from .events.emitter import EventSinkType, create_event_emitter
from .events.metrics import generate_metrics_output, get_metrics
from .lifecycle.machine import LifecycleStateMachine
from .lifecycle.workflow import IssueLifecycleWorkflow
from .orchestrator import PollingOrchestrator
from .provisioning.delegation import HttpTaskDelegator
from .provisioning.machines import MachinesProvisioner
from .provisioning.service import ContainerService
from .retry.coordinator import RetryCoordinator
from .scheduler.repository import PostgresIssueScheduler
from .tracker.client import GitLabAPIError, GitLabClient
from .tracker.labels import LabelService

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global instances, initialized during lifespan startup
settings: DispatcherSettings
orchestrator: Optional[PollingOrchestrator] = None
store: Optional[PostgresIssueScheduler] = None
gitlab_client: Optional[GitLabClient] = None
provisioner: Optional[MachinesProvisioner] = None
delegator: Optional[HttpTaskDelegator] = None


def _redact_secret(value: str, visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters."""
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: DispatcherSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Dispatcher configuration:")
    logger.info(f"  GitLab URL: {settings.gitlab_url}")
    logger.info(f"  GitLab Token: {_redact_secret(settings.gitlab_token)}")
    logger.info(f"  Trigger Labels: {', '.join(settings.trigger_labels)}")
    logger.info(f"  Poll Interval Minutes: {settings.poll_interval_minutes}")
    logger.info(f"  Initial Lookback Minutes: {settings.initial_lookback_minutes}")
    logger.info(f"  Lifecycle Enabled: {settings.lifecycle_enabled}")
    logger.info(f"  Max Retry Attempts: {settings.max_retry_attempts}")
    logger.info(f"  Retry Interval Minutes: {settings.retry_interval_minutes}")
    logger.info(f"  Database URL: {_redact_secret(settings.database_url)}")
    logger.info(f"  Statement Timeout Seconds: {settings.statement_timeout_seconds}")
    logger.info(f"  Machines API URL: {settings.machines_api_url}")
    logger.info(f"  Machines API Token: {_redact_secret(settings.machines_api_token)}")
    logger.info(f"  Machines App Name: {settings.machines_app_name}")
    logger.info(f"  Machines Image: {settings.machines_image}")
    logger.info(f"  Router Domain: {settings.router_domain}")
    logger.info(f"  Readiness Timeout Seconds: {settings.readiness_timeout_seconds}")
    logger.info(f"  Delegation Timeout Seconds: {settings.delegation_timeout_seconds}")
    logger.info(f"  Target Server URL: {settings.target_server_url}")
    logger.info(f"  Container API Token: {_redact_secret(settings.container_api_token)}")
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown.

    Handles:
    - Configuration loading and validation
    - Logging configuration (with secrets redacted)
    - Dependency wiring for the polling orchestrator
    - Stopping the orchestrator and closing clients on shutdown
    """
    global settings, orchestrator, store, gitlab_client, provisioner, delegator

    logger.info("Issue dispatcher starting up...")

    settings = get_settings()
    _log_configuration(settings)

    gitlab_client = GitLabClient(
        token=settings.gitlab_token,
        base_url=settings.gitlab_url,
    )
    store = PostgresIssueScheduler(
        connection_string=settings.database_url,
        statement_timeout_seconds=settings.statement_timeout_seconds,
    )
    provisioner = MachinesProvisioner(
        api_token=settings.machines_api_token,
        app_name=settings.machines_app_name,
        image=settings.machines_image,
        api_url=settings.machines_api_url,
        router_domain=settings.router_domain,
    )
    delegator = HttpTaskDelegator(
        unit_url=provisioner.unit_url,
        auth_token=settings.container_api_token or None,
        timeout=settings.delegation_timeout_seconds,
    )

    await store.connect()
    orchestrator = _build_orchestrator(settings, gitlab_client, store, provisioner, delegator)
    await orchestrator.start()

    logger.info("Issue dispatcher started successfully")

    yield

    logger.info("Issue dispatcher shutting down...")

    if orchestrator is not None:
        orchestrator.stop()
    if delegator is not None:
        await delegator.close()
    if provisioner is not None:
        await provisioner.close()
    if gitlab_client is not None:
        await gitlab_client.close()
    if store is not None:
        await store.disconnect()

    logger.info("Issue dispatcher shutdown complete")


def _build_orchestrator(
    cfg: DispatcherSettings,
    gl_client: GitLabClient,
    issue_store: PostgresIssueScheduler,
    unit_provisioner: MachinesProvisioner,
    task_delegator: HttpTaskDelegator,
) -> PollingOrchestrator:
    """Wire all dispatcher dependencies into a PollingOrchestrator.

    With ``lifecycle_enabled`` off no label service or workflow is built
    and admission falls back to the legacy rule.
    """
    event_emitter = create_event_emitter([EventSinkType.LOGGING, EventSinkType.METRICS])

    label_service: Optional[LabelService] = None
    workflow: Optional[IssueLifecycleWorkflow] = None
    if cfg.lifecycle_enabled:
        label_service = LabelService(
            tracker=gl_client,
            store=issue_store,
            trigger_labels=cfg.trigger_labels,
            state_machine=LifecycleStateMachine(label_writer=gl_client),
        )
        workflow = IssueLifecycleWorkflow(
            label_service=label_service,
            store=issue_store,
            retry_coordinator=RetryCoordinator(
                max_attempts=cfg.max_retry_attempts,
                retry_interval=timedelta(minutes=cfg.retry_interval_minutes),
            ),
            event_emitter=event_emitter,
        )

    container_service = ContainerService(
        provisioner=unit_provisioner,
        delegator=task_delegator,
        store=issue_store,
        tracker=gl_client,
        workflow=workflow,
        target_server_url=cfg.target_server_url,
        readiness_timeout_seconds=cfg.readiness_timeout_seconds,
    )
    container_trigger = ContainerTrigger(
        container_service=container_service,
        trigger_labels=cfg.trigger_labels,
        label_service=label_service,
    )

    return PollingOrchestrator(
        tracker=gl_client,
        store=issue_store,
        container_trigger=container_trigger,
        label_service=label_service,
        workflow=workflow,
        trigger_labels=cfg.trigger_labels,
        interval_seconds=cfg.poll_interval_minutes * 60,
        initial_lookback=timedelta(minutes=cfg.initial_lookback_minutes),
        metrics=get_metrics(),
        event_emitter=event_emitter,
    )


def _require_store() -> PostgresIssueScheduler:
    if store is None:
        raise HTTPException(status_code=503, detail="Dispatcher not initialized")
    return store


app = FastAPI(
    title="GitLab Issue Dispatcher",
    description="Provisions agent containers for labelled GitLab issues",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health():
    """Liveness probe endpoint."""
    return {"status": "healthy"}


@app.get("/ready")
async def ready():
    """Readiness probe endpoint.

    Ready when the database answers and the orchestrator is running.
    """
    database_status = "unhealthy"
    if store is not None and await store.health_check():
        database_status = "healthy"
    running = orchestrator is not None and orchestrator.status()["running"]

    is_ready = database_status == "healthy" and running
    body = {
        "status": "ready" if is_ready else "not_ready",
        "dependencies": {
            "database": database_status,
            "orchestrator": "running" if running else "stopped",
        },
    }
    return JSONResponse(content=body, status_code=200 if is_ready else 503)


@app.get("/status")
async def status():
    """Orchestrator status and pending retries."""
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Dispatcher not initialized")
    return {
        **orchestrator.status(),
        "lifecycle_enabled": orchestrator.lifecycle_enabled,
        "pending_retries": len(orchestrator.get_issues_ready_for_retry()),
    }


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_metrics_output())


@app.get("/api/issues/stats")
async def issue_stats():
    issue_store = _require_store()
    stats = await issue_store.get_issue_stats()
    projects = await issue_store.get_project_issue_stats()
    return {"totals": stats, "projects": projects}


@app.get("/api/lifecycle/stats")
async def lifecycle_stats():
    return await _require_store().get_lifecycle_stats()


@app.get("/api/issues/{issue_id}")
async def get_issue_record(issue_id: int):
    record = await _require_store().find_by_external_id(issue_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Issue {issue_id} not tracked")
    return record


@app.get("/api/containers/{container_id}/issue")
async def get_container_issue(container_id: str):
    record = await _require_store().find_by_container_id(container_id)
    if record is None:
        raise HTTPException(
            status_code=404,
            detail=f"No issue recorded for container {container_id}",
        )
    return record


class TaskReport(BaseModel):
    """Outcome an agent container reports for its task."""

    status: Literal["completed", "failed"]
    error: Optional[str] = Field(default=None, description="Failure reason")


@app.post("/api/containers/{container_id}/report")
async def report_container_task(container_id: str, report: TaskReport):
    """Task outcome pushed by an agent container.

    ``completed`` moves the issue WIP → CONFIRM NEEDED; ``failed`` rejects
    it without retrying.
    """
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Dispatcher not initialized")
    if not orchestrator.lifecycle_enabled:
        raise HTTPException(status_code=409, detail="Lifecycle labels are disabled")

    record = await _require_store().find_by_container_id(container_id)
    if record is None:
        raise HTTPException(
            status_code=404,
            detail=f"No issue recorded for container {container_id}",
        )

    try:
        issue = await orchestrator.tracker.get_issue(record.project_id, record.iid)
    except GitLabAPIError as e:
        raise HTTPException(status_code=502, detail=f"GitLab lookup failed: {e}") from e

    workflow = orchestrator.workflow
    if report.status == "completed":
        moved = await workflow.on_task_completion(issue)
    else:
        reason = report.error or "Container reported a failure"
        moved = await workflow.on_task_execution_failure(issue, RuntimeError(reason))

    logger.info(
        "Container task reported",
        extra={
            "container_id": container_id,
            "issue_id": issue.id,
            "status": report.status,
            "transitioned": moved,
        },
    )
    if not moved:
        raise HTTPException(
            status_code=409,
            detail=f"Issue #{issue.iid} could not leave {issue.labels}",
        )
    return {"issue_id": issue.id, "labels": issue.labels}


if __name__ == "__main__":
    import uvicorn

    # For local development, load settings to get host/port
    dev_settings = get_settings()
    uvicorn.run(
        "src.dispatcher.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
        reload=True,
    )
