"""Custom exception hierarchy for pyfleet.

The classes map onto the four failure kinds the agent distinguishes:

* transient (:class:`FleetTransportError`) - retried with bounded backoff
* validation (:class:`DeploymentValidationError`) - rejected, never retried
* lifecycle (:class:`ComponentLifecycleError`) - contained by the state machine
* fatal (:class:`RollbackError`) - the only kind allowed to escape the core
"""

from __future__ import annotations

from collections.abc import Sequence


class FleetError(Exception):
    """Base exception for all pyfleet errors."""


class FleetConfigError(FleetError):
    """Invalid or missing configuration."""


class FleetTransportError(FleetError):
    """Broker or HTTP level failure (unreachable, non-200, no acknowledgement).

    Always considered transient by the retry helpers.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class PublishTimeoutError(FleetTransportError):
    """A publish was not acknowledged within the configured timeout."""


class DeploymentValidationError(FleetError):
    """Desired-state document or dependency graph is invalid.

    Deployments failing validation are rejected before any component
    state is touched and are never retried.
    """


class JobDocumentError(DeploymentValidationError):
    """Job notification or job document is malformed."""

    def __init__(self, message: str, *, job_id: str | None = None) -> None:
        self.job_id = job_id
        super().__init__(message)


class DependencyCycleError(DeploymentValidationError):
    """Hard dependencies form a cycle."""

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = tuple(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class ComponentLifecycleError(FleetError):
    """A lifecycle step failed or timed out.

    Raised and caught inside :mod:`pyfleet.lifecycle`; callers observe
    the outcome through component state only.
    """

    def __init__(self, message: str, *, component: str = "", step: str = "") -> None:
        self.component = component
        self.step = step
        super().__init__(message)


class ArtifactResolveError(FleetError):
    """Artifact for a component version could not be resolved."""


class DeploymentCancelledError(FleetError):
    """A deployment observed a cancellation request at a checkpoint."""


class RollbackError(FleetError):
    """The shadow configuration could not be restored after a failed apply.

    Leaves the device in a state that needs external intervention or a
    subsequent deployment to recover.
    """

    def __init__(self, message: str, *, deployment_id: str = "") -> None:
        self.deployment_id = deployment_id
        super().__init__(message)


class JobUpdateRejectedError(FleetError):
    """The fleet manager explicitly rejected a job status update.

    Never retried; republishing the same update would be rejected again.
    """

    def __init__(self, message: str, *, job_id: str = "") -> None:
        self.job_id = job_id
        super().__init__(message)
