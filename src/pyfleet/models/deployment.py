"""Deployment models.

:class:`DesiredState` is the validated desired-state document;
:class:`Deployment` is the mutable runtime envelope the queue and the
processor pass around.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import time
import uuid
from typing import Any

from pydantic import Field, model_validator

from pyfleet.models._base import FleetBaseModel
from pyfleet.models.component import ComponentSpec


class DeploymentType(enum.StrEnum):
    CLOUD_JOB = "cloud-job"
    LOCAL = "local"
    SHADOW_SYNC = "shadow-sync"


class DeploymentStatus(enum.StrEnum):
    QUEUED = "QUEUED"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (DeploymentStatus.SUCCEEDED, DeploymentStatus.FAILED, DeploymentStatus.CANCELLED)


class DesiredState(FleetBaseModel):
    """Flat desired-state diff applied against the live component graph.

    Components listed under ``components`` are added or updated,
    components listed under ``removals`` are removed; everything else is
    left untouched.  ``cancels`` names a deployment to cancel.
    """

    components: dict[str, ComponentSpec] = Field(default_factory=dict)
    removals: list[str] = Field(default_factory=list)
    cancels: str | None = None
    fleet_config_arn: str | None = None

    @model_validator(mode="after")
    def _check_names(self) -> DesiredState:
        for name in self.components:
            if not name.strip():
                raise ValueError("component names must be non-empty")
        overlap = set(self.components) & set(self.removals)
        if overlap:
            raise ValueError(f"components both updated and removed: {sorted(overlap)}")
        return self

    @property
    def is_empty(self) -> bool:
        return not self.components and not self.removals


@dataclasses.dataclass(eq=False)
class Deployment:
    """A desired-state change on its way through the queue.

    Mutated only by the queue (replacement, cancellation) and by the
    processor (status).  Immutable in practice once terminal.
    """

    deployment_id: str
    deployment_type: DeploymentType
    document: DesiredState
    status: DeploymentStatus = DeploymentStatus.QUEUED
    status_details: dict[str, str] = dataclasses.field(default_factory=dict)
    created_at: float = dataclasses.field(default_factory=time.time)
    _cancel_requested: bool = dataclasses.field(default=False, init=False, repr=False)
    _completed: asyncio.Event = dataclasses.field(default_factory=asyncio.Event, init=False, repr=False)

    @classmethod
    def create(
        cls,
        document: DesiredState | dict[str, Any],
        *,
        deployment_type: DeploymentType = DeploymentType.LOCAL,
        deployment_id: str | None = None,
    ) -> Deployment:
        """Build a deployment, validating *document* when given as a dict."""
        if not isinstance(document, DesiredState):
            document = DesiredState.model_validate(document)
        return cls(
            deployment_id=deployment_id or f"{deployment_type.value}-{uuid.uuid4().hex[:12]}",
            deployment_type=deployment_type,
            document=document,
        )

    @property
    def fleet_config_arn(self) -> str:
        """Provenance identifier recorded on every component this deployment touches."""
        return self.document.fleet_config_arn or self.deployment_id

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def request_cancel(self) -> None:
        self._cancel_requested = True

    def finish(self, status: DeploymentStatus, details: dict[str, str] | None = None) -> None:
        """Move to a terminal status and release waiters."""
        if self.status.is_terminal:
            return
        self.status = status
        if details:
            self.status_details = dict(details)
        self._completed.set()

    async def wait(self, timeout: float | None = None) -> DeploymentStatus:
        """Wait until the deployment is terminal and return its status."""
        await asyncio.wait_for(self._completed.wait(), timeout)
        return self.status

    def record(self) -> DeploymentRecord:
        return DeploymentRecord(
            deployment_id=self.deployment_id,
            deployment_type=self.deployment_type,
            status=self.status,
            status_details=dict(self.status_details),
        )


class DeploymentRecord(FleetBaseModel):
    """Audit entry retained after a deployment is discarded."""

    deployment_id: str
    deployment_type: DeploymentType
    status: DeploymentStatus
    status_details: dict[str, str] = Field(default_factory=dict)
