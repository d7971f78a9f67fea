"""Fleet status snapshot models."""

from __future__ import annotations

import enum

from pydantic import Field

from pyfleet.models._base import FleetBaseModel
from pyfleet.models.component import ComponentRecord, LifecycleState


class OverallStatus(enum.StrEnum):
    HEALTHY = "HEALTHY"
    UNHEALTHY = "UNHEALTHY"


class ComponentStatusDetails(FleetBaseModel):
    name: str
    version: str | None = None
    state: LifecycleState
    is_root: bool = False
    fleet_config_arns: list[str] = Field(default_factory=list)

    @classmethod
    def from_record(cls, record: ComponentRecord) -> ComponentStatusDetails:
        return cls(
            name=record.name,
            version=record.version,
            state=record.state,
            is_root=record.is_root,
            fleet_config_arns=sorted(record.fleet_config_arns),
        )


class FleetStatusDetails(FleetBaseModel):
    """Complete inventory snapshot published to the fleet manager.

    ``components`` always enumerates every registered component.
    """

    thing: str
    timestamp: int
    sequence_number: int
    overall_status: OverallStatus
    components: list[ComponentStatusDetails] = Field(default_factory=list)
    requires_intervention: bool = False

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, payload: str | bytes) -> FleetStatusDetails:
        return cls.model_validate_json(payload)
