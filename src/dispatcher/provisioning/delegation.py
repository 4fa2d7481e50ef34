"""Task delegation to agent containers.

Converts an issue into an agent task and hands it to the container's task
API. The container reports results back to the issue on its own, using
the issue metadata carried in the payload.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx
from pydantic import BaseModel, Field

from src.dispatcher.errors import DelegationError
from src.dispatcher.tracker.models import Issue


logger = logging.getLogger(__name__)


TASK_PATH = "/api/agent8/task"
PROMPT_ID = "agent8"


class DelegationResult(BaseModel):
    """Accepted task handoff."""

    task_id: str = Field(..., description="Task identity assigned by the container")
    unit_id: str = Field(..., description="Container that accepted the task")
    status: str = Field(default="pending")
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def build_task_payload(
    issue: Issue,
    unit_id: str,
    target_server_url: str,
    context_optimization: bool = False,
) -> Dict[str, Any]:
    """Build the task payload for an issue.

    The issue description becomes the single user message.

    Raises:
        DelegationError: If the issue has no description.
    """
    if not issue.description or not issue.description.strip():
        raise DelegationError(
            f"Issue #{issue.iid} has no description",
            unit_id=unit_id,
        )

    return {
        "targetServerUrl": target_server_url,
        "messages": [{"role": "user", "content": issue.description}],
        "promptId": PROMPT_ID,
        "contextOptimization": context_optimization,
        "files": {},
        "gitlabInfo": {
            "projectId": issue.project_id,
            "issueIid": issue.iid,
            "issueUrl": issue.web_url,
            "issueTitle": issue.title,
            "issueDescription": issue.description,
            "issueAuthor": issue.author_username,
            "containerId": unit_id,
        },
    }


class HttpTaskDelegator:
    """Posts task payloads to ``{unit_url}/api/agent8/task``.

    Attributes:
        unit_url: Maps a unit id to its base URL.
        auth_token: Optional bearer token for the container task API.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        unit_url: Callable[[str], str],
        auth_token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.unit_url = unit_url
        self.auth_token = auth_token
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def delegate(self, unit_id: str, payload: Dict[str, Any]) -> DelegationResult:
        """Hand a task to a container.

        Raises:
            DelegationError: On timeout, transport failure, an error
                status, or a response without a task id.
        """
        url = f"{self.unit_url(unit_id)}{TASK_PATH}"
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"

        try:
            response = await self.client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise DelegationError(
                f"Task delegation to {unit_id} timed out",
                unit_id=unit_id,
                original_error=e,
            ) from e
        except httpx.HTTPError as e:
            raise DelegationError(
                f"Task delegation to {unit_id} failed: {e}",
                unit_id=unit_id,
                original_error=e,
            ) from e

        if response.status_code >= 400:
            logger.error(
                "Container task API error",
                extra={
                    "unit_id": unit_id,
                    "status_code": response.status_code,
                    "response_body": response.text[:500],
                },
            )
            raise DelegationError(
                f"Container rejected task: HTTP {response.status_code}",
                unit_id=unit_id,
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise DelegationError(
                "Container response was not JSON",
                unit_id=unit_id,
                status_code=response.status_code,
                original_error=e,
            ) from e

        task_id = body.get("taskId") if isinstance(body, dict) else None
        if not task_id:
            raise DelegationError(
                "Container response carried no task id",
                unit_id=unit_id,
                status_code=response.status_code,
            )

        logger.info(
            "Task delegated to container",
            extra={"unit_id": unit_id, "task_id": task_id},
        )
        return DelegationResult(task_id=str(task_id), unit_id=unit_id)
