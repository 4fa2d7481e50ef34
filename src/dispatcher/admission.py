"""Admission rule deciding whether an issue gets a container.

An issue is admitted when it carries a trigger label, is open and is not
confidential. With lifecycle labels enabled it must also be in TODO (or,
for a retry of a failed attempt, still in WIP). Without a label service
the legacy rule applies: trigger label, open, not confidential.
"""

import logging
from typing import Iterable, Optional

from src.dispatcher.lifecycle.models import LifecycleLabel
from src.dispatcher.provisioning.service import ContainerService
from src.dispatcher.tracker.labels import LabelService
from src.dispatcher.tracker.models import Issue


logger = logging.getLogger(__name__)


_RETRY_LABELS = (LifecycleLabel.TODO, LifecycleLabel.WIP)


class ContainerTrigger:
    """Applies the admission rule and starts container creation."""

    def __init__(
        self,
        container_service: ContainerService,
        trigger_labels: Iterable[str],
        label_service: Optional[LabelService] = None,
    ):
        self.container_service = container_service
        self.trigger_labels = list(trigger_labels)
        self.label_service = label_service

    def has_trigger_label(self, issue: Issue) -> bool:
        if self.label_service is not None:
            return self.label_service.has_trigger_label(issue)
        return any(label in self.trigger_labels for label in issue.labels)

    def should_trigger(self, issue: Issue, retrying: bool = False) -> bool:
        if not self.has_trigger_label(issue):
            return False
        if issue.confidential or not issue.is_open:
            return False
        if self.label_service is None:
            return True

        label = self.label_service.current_lifecycle_label(issue)
        if retrying:
            return label in _RETRY_LABELS
        return label == LifecycleLabel.TODO

    async def process_issue(self, issue: Issue, retrying: bool = False) -> Optional[str]:
        """Create a container for an admitted issue.

        Returns:
            The unit id, or None if the issue was not admitted or creation
            failed.
        """
        if not self.should_trigger(issue, retrying=retrying):
            logger.info(
                "Issue not admitted",
                extra={
                    "issue_id": issue.id,
                    "issue_iid": issue.iid,
                    "labels": issue.labels,
                    "retrying": retrying,
                },
            )
            return None
        return await self.container_service.create_container_for_issue(issue)
