"""Compute unit provisioning and task delegation."""

from src.dispatcher.provisioning.delegation import (
    DelegationResult,
    HttpTaskDelegator,
    build_task_payload,
)
from src.dispatcher.provisioning.machines import MachinesProvisioner
from src.dispatcher.provisioning.service import (
    ComputeProvisioner,
    ContainerService,
    TaskDelegator,
    owner_key_for,
)

__all__ = [
    "ComputeProvisioner",
    "ContainerService",
    "DelegationResult",
    "HttpTaskDelegator",
    "MachinesProvisioner",
    "TaskDelegator",
    "build_task_payload",
    "owner_key_for",
]
