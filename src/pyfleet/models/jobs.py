"""Cloud job channel wire models."""

from __future__ import annotations

import enum
import json
from typing import Any

from pydantic import Field, field_validator

from pyfleet.models._base import FleetBaseModel
from pyfleet.models.component import ComponentSpec
from pyfleet.models.deployment import DesiredState


class JobStatus(enum.StrEnum):
    QUEUED = "QUEUED"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    REJECTED = "REJECTED"


class JobOperation(enum.StrEnum):
    DEPLOY = "DEPLOY"
    CANCEL = "CANCEL"


class JobNotification(FleetBaseModel):
    """``{jobId, operation, documentLocation}`` pushed on the notify topic."""

    job_id: str
    operation: JobOperation = JobOperation.DEPLOY
    document_location: str | None = None

    @field_validator("operation", mode="before")
    @classmethod
    def _upper_operation(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value


class JobDocument(FleetBaseModel):
    """``{jobId, targetComponents, desiredConfig}`` fetched from ``documentLocation``."""

    job_id: str
    target_components: list[str] = Field(default_factory=list)
    desired_config: DesiredState = Field(default_factory=DesiredState)

    def to_desired_state(self) -> DesiredState:
        """Desired state with ``isRoot`` derived from ``targetComponents``.

        When the job names its target components, exactly those are root
        components; everything else in the document is a dependency.
        """
        if not self.target_components:
            return self.desired_config
        targets = set(self.target_components)
        components: dict[str, ComponentSpec] = {
            name: spec.model_copy(update={"is_root": name in targets})
            for name, spec in self.desired_config.components.items()
        }
        return self.desired_config.model_copy(update={"components": components})


class JobStatusUpdate(FleetBaseModel):
    """``{jobId, status, statusDetails?}`` published on the job update topic."""

    job_id: str
    status: JobStatus
    status_details: dict[str, str] | None = None

    def to_payload(self) -> bytes:
        return json.dumps(self.to_wire(), separators=(",", ":")).encode("utf-8")
