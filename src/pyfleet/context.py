"""Orchestration context shared by every subsystem."""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING

from pyfleet.artifacts import ArtifactStore
from pyfleet.config import FleetConfig
from pyfleet.config_store import ConfigStore
from pyfleet.deployment.queue import DeploymentQueue
from pyfleet.lifecycle.hooks import Hook, ProcessSupervisor, SubprocessSupervisor
from pyfleet.models.component import LifecycleStep
from pyfleet.registry import ComponentRegistry
from pyfleet.state.bus import EventBus
from pyfleet.state.events import ComponentStateChanged, DeploymentEvent

if TYPE_CHECKING:
    from pyfleet._mqtt import PubSub


@dataclasses.dataclass
class FleetContext:
    """Everything a subsystem needs, constructed once per agent.

    There is no module-level state anywhere in the package; two contexts
    in one process are fully independent.
    """

    config: FleetConfig
    config_store: ConfigStore = dataclasses.field(default_factory=ConfigStore)
    supervisor: ProcessSupervisor = dataclasses.field(default_factory=SubprocessSupervisor)
    artifact_store: ArtifactStore | None = None
    builtin_hooks: dict[str, dict[LifecycleStep, Hook]] = dataclasses.field(default_factory=dict)
    component_events: EventBus[ComponentStateChanged] = dataclasses.field(
        default_factory=lambda: EventBus("components")
    )
    deployment_events: EventBus[DeploymentEvent] = dataclasses.field(default_factory=lambda: EventBus("deployments"))
    pubsub: PubSub | None = None
    registry: ComponentRegistry = dataclasses.field(init=False)
    queue: DeploymentQueue = dataclasses.field(init=False)

    def __post_init__(self) -> None:
        self.registry = ComponentRegistry(self)
        self.queue = DeploymentQueue()

    def register_builtin(self, name: str, hooks: dict[LifecycleStep, Hook]) -> None:
        """Register in-process lifecycle hooks for a built-in or plugin component."""
        self.builtin_hooks[name] = {LifecycleStep(step): hook for step, hook in hooks.items()}
