"""Component models: desired specs, runtime records and enums."""

from __future__ import annotations

import enum
from typing import Any

from pydantic import Field, field_validator

from pyfleet._constants import (
    BOOTSTRAP_STEP,
    CONFIGURATION_KEY,
    DEPENDENCIES_KEY,
    INSTALL_STEP,
    KIND_KEY,
    LIFECYCLE_KEY,
    RUN_STEP,
    SHUTDOWN_STEP,
    STARTUP_STEP,
    VERSION_KEY,
)
from pyfleet.models._base import FleetBaseModel


class LifecycleState(enum.StrEnum):
    """Lifecycle state of a managed component."""

    NEW = "NEW"
    INSTALLED = "INSTALLED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    FINISHED = "FINISHED"
    ERRORED = "ERRORED"
    BROKEN = "BROKEN"
    BOOTSTRAPPING = "BOOTSTRAPPING"

    @property
    def is_terminal(self) -> bool:
        """States that end a start attempt (and trigger a status publish)."""
        return self in (LifecycleState.RUNNING, LifecycleState.FINISHED, LifecycleState.BROKEN)

    @property
    def satisfies_dependency(self) -> bool:
        """Whether a hard dependency in this state lets dependents start."""
        return self in (LifecycleState.RUNNING, LifecycleState.FINISHED)

    @property
    def is_unhealthy(self) -> bool:
        return self in (LifecycleState.ERRORED, LifecycleState.BROKEN)


class LifecycleStep(enum.StrEnum):
    """Hooks declared under a component's ``lifecycle`` namespace."""

    INSTALL = INSTALL_STEP
    STARTUP = STARTUP_STEP
    RUN = RUN_STEP
    SHUTDOWN = SHUTDOWN_STEP
    BOOTSTRAP = BOOTSTRAP_STEP


class ComponentKind(enum.StrEnum):
    """How a component's lifecycle hooks are executed.

    ``external-process`` hooks are shell scripts run by the process
    supervisor; ``built-in`` and ``plugin`` hooks are in-process async
    callables registered on the context.
    """

    EXTERNAL_PROCESS = "external-process"
    BUILTIN = "built-in"
    PLUGIN = "plugin"


class DependencyType(enum.StrEnum):
    HARD = "HARD"
    SOFT = "SOFT"


class ComponentSpec(FleetBaseModel):
    """Desired definition of one component inside a desired-state document."""

    version: str
    kind: ComponentKind = ComponentKind.EXTERNAL_PROCESS
    is_root: bool = True
    dependencies: dict[str, DependencyType] = Field(default_factory=dict)
    lifecycle: dict[str, Any] = Field(default_factory=dict)
    configuration: dict[str, Any] = Field(default_factory=dict)

    @field_validator("version")
    @classmethod
    def _strip_version(cls, value: str) -> str:
        return value.strip()

    @field_validator("dependencies", mode="before")
    @classmethod
    def _normalize_dependencies(cls, value: Any) -> Any:
        # Accept a bare list of names as all-hard dependencies.
        if isinstance(value, (list, tuple)):
            return {str(name): DependencyType.HARD for name in value}
        if isinstance(value, dict):
            return {str(k): (v.upper() if isinstance(v, str) else v) for k, v in value.items()}
        return value

    @property
    def hard_dependencies(self) -> frozenset[str]:
        return frozenset(n for n, t in self.dependencies.items() if t == DependencyType.HARD)

    @property
    def soft_dependencies(self) -> frozenset[str]:
        return frozenset(n for n, t in self.dependencies.items() if t == DependencyType.SOFT)

    def to_config(self) -> dict[str, Any]:
        """Raw configuration subtree stored under ``services.<name>``."""
        return {
            VERSION_KEY: self.version,
            KIND_KEY: self.kind.value,
            DEPENDENCIES_KEY: {name: dep.value for name, dep in sorted(self.dependencies.items())},
            LIFECYCLE_KEY: dict(self.lifecycle),
            CONFIGURATION_KEY: dict(self.configuration),
        }


class ComponentRecord(FleetBaseModel):
    """Immutable point-in-time view of a registered component."""

    name: str
    kind: ComponentKind = ComponentKind.EXTERNAL_PROCESS
    hard_dependencies: frozenset[str] = frozenset()
    soft_dependencies: frozenset[str] = frozenset()
    desired_version: str | None = None
    applied_version: str | None = None
    state: LifecycleState = LifecycleState.NEW
    is_root: bool = False
    fleet_config_arns: frozenset[str] = frozenset()

    @property
    def version(self) -> str | None:
        return self.applied_version or self.desired_version
