"""Data models for documents, wire messages and component views."""

from pyfleet.models._base import FleetBaseModel
from pyfleet.models.component import (
    ComponentKind,
    ComponentRecord,
    ComponentSpec,
    DependencyType,
    LifecycleState,
    LifecycleStep,
)
from pyfleet.models.deployment import (
    Deployment,
    DeploymentRecord,
    DeploymentStatus,
    DeploymentType,
    DesiredState,
)
from pyfleet.models.jobs import JobDocument, JobNotification, JobOperation, JobStatus, JobStatusUpdate
from pyfleet.models.status import ComponentStatusDetails, FleetStatusDetails, OverallStatus

__all__ = [
    "ComponentKind",
    "ComponentRecord",
    "ComponentSpec",
    "ComponentStatusDetails",
    "DependencyType",
    "Deployment",
    "DeploymentRecord",
    "DeploymentStatus",
    "DeploymentType",
    "DesiredState",
    "FleetBaseModel",
    "FleetStatusDetails",
    "JobDocument",
    "JobNotification",
    "JobOperation",
    "JobStatus",
    "JobStatusUpdate",
    "LifecycleState",
    "LifecycleStep",
    "OverallStatus",
]
