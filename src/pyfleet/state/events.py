"""Events published on the context buses."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from pyfleet.models.component import ComponentRecord, LifecycleState
from pyfleet.models.deployment import DeploymentStatus, DeploymentType


class ComponentChange(StrEnum):
    REGISTERED = "registered"
    UPDATED = "updated"
    STATE = "state"
    REMOVED = "removed"


class ComponentStateChanged(BaseModel):
    """A component was registered, updated, transitioned or removed.

    ``component`` is the record *after* the change (for removals, the
    last record before removal).
    """

    model_config = ConfigDict(frozen=True)

    change: ComponentChange
    component: ComponentRecord
    old_state: LifecycleState | None = None
    new_state: LifecycleState | None = None
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def name(self) -> str:
        return self.component.name


class DeploymentPhase(StrEnum):
    STARTED = "started"
    COMPLETED = "completed"


class DeploymentEvent(BaseModel):
    """A deployment was dequeued or reached a terminal status."""

    model_config = ConfigDict(frozen=True)

    phase: DeploymentPhase
    deployment_id: str
    deployment_type: DeploymentType
    status: DeploymentStatus
    status_details: dict[str, str] = Field(default_factory=dict)
    fatal: bool = False
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
