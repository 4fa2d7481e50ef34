"""Container creation workflow for a single issue.

Steps:
1. Lifecycle hook: TODO → WIP
2. Create a compute unit owned by ``gitlab-{author}``
3. Wait for the unit to answer its health check
4. Record the unit id on the issue record
5. Delegate the task and note the container on the issue
6. Lifecycle hook: success clears retry state

Any failure goes to the lifecycle workflow, which schedules a retry or
escalates to REJECT, and the method returns None.

Source:
- src/dispatcher/provisioning/machines.py (MachinesProvisioner)
- src/dispatcher/provisioning/delegation.py (HttpTaskDelegator)
- src/dispatcher/lifecycle/workflow.py (IssueLifecycleWorkflow)
"""

import logging
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from src.dispatcher.errors import ProvisioningError
from src.dispatcher.lifecycle.workflow import IssueLifecycleWorkflow
from src.dispatcher.provisioning.delegation import DelegationResult, build_task_payload
from src.dispatcher.scheduler.selection import IssueScheduler
from src.dispatcher.tracker.labels import IssueTracker
from src.dispatcher.tracker.models import Issue


logger = logging.getLogger(__name__)


@runtime_checkable
class ComputeProvisioner(Protocol):
    """Protocol for creating compute units and waiting for readiness."""

    async def create_compute_unit(self, owner_key: str) -> Optional[str]:
        """Create a unit; None means creation failed."""
        ...

    async def wait_until_ready(self, unit_id: str, timeout_seconds: float) -> bool:
        ...

    def unit_url(self, unit_id: str) -> str:
        ...


@runtime_checkable
class TaskDelegator(Protocol):
    """Protocol for handing a task to a ready compute unit."""

    async def delegate(self, unit_id: str, payload: Dict[str, Any]) -> DelegationResult:
        """Raises DelegationError if the unit rejects or times out."""
        ...


def owner_key_for(issue: Issue) -> str:
    return f"gitlab-{issue.author_username}"


def container_created_note(
    issue: Issue,
    unit_id: str,
    unit_url: str,
    result: DelegationResult,
) -> str:
    return (
        "### Container Created & Task Delegated\n\n"
        f"- **Container ID**: `{unit_id}`\n"
        f"- **Container URL**: [{unit_url}]({unit_url})\n"
        f"- **Task ID**: `{result.task_id}`\n"
        f"- **Issue**: #{issue.iid} {issue.title}\n\n"
        "The container will report results on this issue."
    )


def container_error_note(error: BaseException, unit_id: Optional[str] = None) -> str:
    lines = ["### Container Task Failed", ""]
    if unit_id:
        lines.append(f"- **Container ID**: `{unit_id}`")
    lines.append(f"- **Error**: {error}")
    return "\n".join(lines)


class ContainerService:
    """Runs the container creation workflow for issues.

    Attributes:
        provisioner: Creates compute units and checks readiness.
        delegator: Hands tasks to ready units.
        store: Issue store; receives the unit id once the unit is ready.
        tracker: Tracker client used for notes.
        workflow: Lifecycle hooks; None disables label management.
        target_server_url: Forwarded to the agent in every payload.
        readiness_timeout_seconds: Bound on the readiness wait.
    """

    def __init__(
        self,
        provisioner: ComputeProvisioner,
        delegator: TaskDelegator,
        store: IssueScheduler,
        tracker: IssueTracker,
        workflow: Optional[IssueLifecycleWorkflow] = None,
        target_server_url: str = "",
        readiness_timeout_seconds: float = 120.0,
        context_optimization: bool = False,
    ):
        self.provisioner = provisioner
        self.delegator = delegator
        self.store = store
        self.tracker = tracker
        self.workflow = workflow
        self.target_server_url = target_server_url
        self.readiness_timeout_seconds = readiness_timeout_seconds
        self.context_optimization = context_optimization

    async def create_container_for_issue(self, issue: Issue) -> Optional[str]:
        """Provision a container for an issue and delegate its task.

        Returns:
            The unit id on success, None on any failure.
        """
        unit_id: Optional[str] = None
        try:
            if self.workflow is not None:
                await self.workflow.on_container_creation_start(issue)

            owner_key = owner_key_for(issue)
            logger.info(
                "Creating container for issue",
                extra={"issue_id": issue.id, "issue_iid": issue.iid, "owner_key": owner_key},
            )
            unit_id = await self.provisioner.create_compute_unit(owner_key)
            if not unit_id:
                raise ProvisioningError("Failed to create container")

            ready = await self.provisioner.wait_until_ready(
                unit_id, self.readiness_timeout_seconds
            )
            if not ready:
                raise ProvisioningError(
                    f"Container {unit_id} did not become ready within "
                    f"{self.readiness_timeout_seconds:g}s",
                    unit_id=unit_id,
                )

            await self.store.mark_processed(issue, unit_id)

            payload = build_task_payload(
                issue,
                unit_id,
                self.target_server_url,
                self.context_optimization,
            )
            result = await self.delegator.delegate(unit_id, payload)

            if self.workflow is not None:
                await self.workflow.on_container_creation_success(issue, unit_id)

            await self._add_note(
                issue,
                container_created_note(
                    issue, unit_id, self.provisioner.unit_url(unit_id), result
                ),
            )
            return unit_id

        except Exception as e:
            logger.error(
                "Container creation failed for issue",
                extra={"issue_id": issue.id, "unit_id": unit_id, "error": str(e)},
                exc_info=True,
            )
            await self._add_note(issue, container_error_note(e, unit_id))
            if self.workflow is not None:
                await self.workflow.on_container_creation_failure(issue, e)
            return None

    async def _add_note(self, issue: Issue, body: str) -> None:
        try:
            await self.tracker.add_comment(issue.project_id, issue.iid, body)
        except Exception as e:
            logger.error(
                "Failed to add note to issue",
                extra={"issue_id": issue.id, "error": str(e)},
            )
