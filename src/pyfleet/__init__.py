"""pyfleet - Async device-side agent for fleet-managed edge devices."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pyfleet")
except PackageNotFoundError:
    __version__ = "0+local"
from pyfleet.agent import FleetAgent
from pyfleet.config import FleetConfig, RetryPolicy
from pyfleet.context import FleetContext
from pyfleet.exceptions import (
    ArtifactResolveError,
    ComponentLifecycleError,
    DependencyCycleError,
    DeploymentCancelledError,
    DeploymentValidationError,
    FleetConfigError,
    FleetError,
    FleetTransportError,
    JobDocumentError,
    JobUpdateRejectedError,
    PublishTimeoutError,
    RollbackError,
)
from pyfleet.models import (
    ComponentKind,
    ComponentRecord,
    ComponentSpec,
    Deployment,
    DeploymentStatus,
    DeploymentType,
    DesiredState,
    FleetStatusDetails,
    JobStatus,
    LifecycleState,
    LifecycleStep,
    OverallStatus,
)

__all__ = [
    "__version__",
    "ArtifactResolveError",
    "ComponentKind",
    "ComponentLifecycleError",
    "ComponentRecord",
    "ComponentSpec",
    "DependencyCycleError",
    "Deployment",
    "DeploymentCancelledError",
    "DeploymentStatus",
    "DeploymentType",
    "DeploymentValidationError",
    "DesiredState",
    "FleetAgent",
    "FleetConfig",
    "FleetConfigError",
    "FleetContext",
    "FleetError",
    "FleetStatusDetails",
    "FleetTransportError",
    "JobDocumentError",
    "JobStatus",
    "JobUpdateRejectedError",
    "LifecycleState",
    "LifecycleStep",
    "OverallStatus",
    "PublishTimeoutError",
    "RetryPolicy",
    "RollbackError",
]
