"""Component registry and dependency graph."""

from __future__ import annotations

import asyncio
import dataclasses
import heapq
import logging
from collections.abc import Callable, Iterable, Mapping
from typing import TYPE_CHECKING

from pyfleet.exceptions import DependencyCycleError, DeploymentValidationError
from pyfleet.lifecycle.state_machine import ComponentLifecycle
from pyfleet.models.component import ComponentKind, ComponentRecord, ComponentSpec, LifecycleState
from pyfleet.state.events import ComponentChange, ComponentStateChanged

if TYPE_CHECKING:
    from pyfleet.context import FleetContext

_logger = logging.getLogger(__name__)


@dataclasses.dataclass
class Component:
    """Mutable registry entry for one managed component.

    ``state`` is written only by the component's lifecycle; the metadata
    fields are written by the registry while holding the component lock.
    """

    name: str
    kind: ComponentKind = ComponentKind.EXTERNAL_PROCESS
    hard_dependencies: set[str] = dataclasses.field(default_factory=set)
    soft_dependencies: set[str] = dataclasses.field(default_factory=set)
    desired_version: str | None = None
    applied_version: str | None = None
    state: LifecycleState = LifecycleState.NEW
    is_root: bool = False
    fleet_config_arns: set[str] = dataclasses.field(default_factory=set)

    @property
    def dependencies(self) -> set[str]:
        return self.hard_dependencies | self.soft_dependencies

    def record(self) -> ComponentRecord:
        return ComponentRecord(
            name=self.name,
            kind=self.kind,
            hard_dependencies=frozenset(self.hard_dependencies),
            soft_dependencies=frozenset(self.soft_dependencies),
            desired_version=self.desired_version,
            applied_version=self.applied_version,
            state=self.state,
            is_root=self.is_root,
            fleet_config_arns=frozenset(self.fleet_config_arns),
        )


def topological_order(graph: Mapping[str, Iterable[str]], names: Iterable[str] | None = None) -> list[str]:
    """Order *names* so every component comes after its dependencies.

    *graph* maps a component to the components it depends on.  Edges that
    leave the requested subset are ignored.  Ties are broken by name so
    the order is deterministic.

    Raises
    ------
    DependencyCycleError
        If the subset contains a cycle.
    """
    subset = set(graph) if names is None else set(names)
    indegree = {name: 0 for name in subset}
    dependents: dict[str, list[str]] = {name: [] for name in subset}
    for name in subset:
        for dep in set(graph.get(name, ())):
            if dep in subset and dep != name:
                indegree[name] += 1
                dependents[dep].append(name)
            elif dep == name:
                raise DependencyCycleError([name, name])

    ready = [name for name, count in indegree.items() if count == 0]
    heapq.heapify(ready)
    order: list[str] = []
    while ready:
        name = heapq.heappop(ready)
        order.append(name)
        for dependent in dependents[name]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(ready, dependent)

    if len(order) != len(subset):
        remaining = {name for name in subset if name not in order}
        raise DependencyCycleError(_find_cycle(graph, remaining))
    return order


def _find_cycle(graph: Mapping[str, Iterable[str]], nodes: set[str]) -> list[str]:
    # Walk dependency edges inside the unresolved set until a node repeats.
    start = min(nodes)
    path: list[str] = []
    seen: dict[str, int] = {}
    node = start
    while node not in seen:
        seen[node] = len(path)
        path.append(node)
        node = min(dep for dep in graph.get(node, ()) if dep in nodes)
    return [*path[seen[node] :], node]


def validate_dependency_graph(graph: Mapping[str, Iterable[str]], hard_graph: Mapping[str, Iterable[str]]) -> None:
    """Reject unknown dependencies and hard-dependency cycles.

    *graph* holds every declared dependency, *hard_graph* only the hard
    ones.  Soft cycles are allowed since they never gate a start.
    """
    for name, deps in graph.items():
        missing = sorted(dep for dep in deps if dep not in graph)
        if missing:
            raise DeploymentValidationError(f"component {name!r} depends on unknown component(s) {missing}")
    topological_order(hard_graph)


class ComponentRegistry:
    """Owns every :class:`Component` and its :class:`ComponentLifecycle`.

    State transitions are fanned out on ``context.component_events`` and
    forwarded to dependents so they can re-evaluate readiness.
    """

    def __init__(self, context: FleetContext) -> None:
        self._context = context
        self._components: dict[str, Component] = {}
        self._lifecycles: dict[str, ComponentLifecycle] = {}
        self._changed = asyncio.Event()

    def __len__(self) -> int:
        return len(self._components)

    def __contains__(self, name: object) -> bool:
        return name in self._components

    def names(self) -> list[str]:
        return sorted(self._components)

    def get(self, name: str) -> Component | None:
        return self._components.get(name)

    def lifecycle(self, name: str) -> ComponentLifecycle:
        try:
            return self._lifecycles[name]
        except KeyError:
            raise KeyError(f"unknown component {name!r}") from None

    def state_of(self, name: str) -> LifecycleState | None:
        component = self._components.get(name)
        return component.state if component is not None else None

    def records(self) -> list[ComponentRecord]:
        """Snapshot of every registered component, sorted by name."""
        return [self._components[name].record() for name in sorted(self._components)]

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    async def upsert(self, name: str, spec: ComponentSpec, *, fleet_config_arn: str | None = None) -> Component:
        """Register *name* or update its metadata from *spec*.

        A new component starts in ``NEW``.  Updating never touches the
        lifecycle state; the caller decides whether to restart.
        """
        component = self._components.get(name)
        if component is None:
            component = Component(
                name=name,
                kind=spec.kind,
                hard_dependencies=set(spec.hard_dependencies),
                soft_dependencies=set(spec.soft_dependencies),
                desired_version=spec.version,
                is_root=spec.is_root,
                fleet_config_arns={fleet_config_arn} if fleet_config_arn else set(),
            )
            self._components[name] = component
            self._lifecycles[name] = ComponentLifecycle(component, self._context)
            _logger.info("Registered component %s %s", name, spec.version)
            self._emit(ComponentChange.REGISTERED, component)
            return component

        async with self._lifecycles[name].lock:
            component.kind = spec.kind
            component.hard_dependencies = set(spec.hard_dependencies)
            component.soft_dependencies = set(spec.soft_dependencies)
            component.desired_version = spec.version
            component.is_root = spec.is_root
            if fleet_config_arn:
                component.fleet_config_arns.add(fleet_config_arn)
        self._emit(ComponentChange.UPDATED, component)
        return component

    async def remove(self, name: str) -> bool:
        """Forget *name*; the caller must have stopped it first."""
        component = self._components.pop(name, None)
        if component is None:
            return False
        lifecycle = self._lifecycles.pop(name)
        await lifecycle.close()
        _logger.info("Removed component %s", name)
        self._emit(ComponentChange.REMOVED, component)
        for dependent in self.dependents_of(name):
            self._lifecycles[dependent].notify_dependency_state_changed(name, component.state)
        return True

    def export(self) -> list[ComponentRecord]:
        """Records suitable for :meth:`restore`."""
        return self.records()

    async def restore(self, records: Iterable[ComponentRecord]) -> None:
        """Reset metadata to *records*, dropping components not in them.

        Lifecycle states are left untouched; they are driven back by the
        rollback restarts.
        """
        wanted = {record.name: record for record in records}
        for name in [n for n in self._components if n not in wanted]:
            await self.lifecycle(name).stop()
            await self.remove(name)
        for name, record in wanted.items():
            component = self._components.get(name)
            if component is None:
                component = Component(name=name, state=LifecycleState.NEW)
                self._components[name] = component
                self._lifecycles[name] = ComponentLifecycle(component, self._context)
                self._emit(ComponentChange.REGISTERED, component)
            async with self._lifecycles[name].lock:
                component.kind = record.kind
                component.hard_dependencies = set(record.hard_dependencies)
                component.soft_dependencies = set(record.soft_dependencies)
                component.desired_version = record.desired_version
                component.applied_version = record.applied_version
                component.is_root = record.is_root
                component.fleet_config_arns = set(record.fleet_config_arns)
            self._emit(ComponentChange.UPDATED, component)

    # ------------------------------------------------------------------
    # Graph queries
    # ------------------------------------------------------------------

    def dependency_graph(self, *, hard_only: bool = False) -> dict[str, set[str]]:
        return {
            name: set(c.hard_dependencies) if hard_only else c.dependencies for name, c in self._components.items()
        }

    def dependents_of(self, name: str) -> list[str]:
        """Direct dependents (hard or soft) of *name*."""
        return sorted(n for n, c in self._components.items() if name in c.dependencies)

    def dependents_closure(self, names: Iterable[str]) -> set[str]:
        """*names* plus everything that transitively depends on them."""
        closure = set(names)
        frontier = list(closure)
        while frontier:
            for dependent in self.dependents_of(frontier.pop()):
                if dependent not in closure:
                    closure.add(dependent)
                    frontier.append(dependent)
        return closure

    def start_order(self, names: Iterable[str] | None = None) -> list[str]:
        """Dependency order over *names* (default: everything registered)."""
        subset = [n for n in (names if names is not None else self._components) if n in self._components]
        return topological_order(self.dependency_graph(hard_only=True), subset)

    def is_blocked(self, name: str, _seen: frozenset[str] = frozenset()) -> bool:
        """Whether a hard dependency of *name* is ``BROKEN``, directly or transitively."""
        component = self._components.get(name)
        if component is None or name in _seen:
            return False
        seen = _seen | {name}
        for dep in component.hard_dependencies:
            state = self.state_of(dep)
            if state == LifecycleState.BROKEN or self.is_blocked(dep, seen):
                return True
        return False

    def is_settled(self, name: str) -> bool:
        """Ready, ``BROKEN`` or waiting on a broken dependency."""
        component = self._components.get(name)
        if component is None:
            return True
        if component.state == LifecycleState.BROKEN or self.is_blocked(name):
            return True
        return self._lifecycles[name].is_ready

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def on_state_changed(self, component: Component, old: LifecycleState, new: LifecycleState) -> None:
        """Called by a lifecycle after every transition."""
        self._emit(ComponentChange.STATE, component, old_state=old, new_state=new)
        for dependent in self.dependents_of(component.name):
            self._lifecycles[dependent].notify_dependency_state_changed(component.name, new)

    async def wait_for(self, predicate: Callable[[], bool], timeout: float | None = None) -> bool:
        """Wait until *predicate* holds; return ``False`` on timeout."""
        try:
            async with asyncio.timeout(timeout):
                while not predicate():
                    self._changed.clear()
                    await self._changed.wait()
        except TimeoutError:
            return predicate()
        return True

    def _emit(
        self,
        change: ComponentChange,
        component: Component,
        *,
        old_state: LifecycleState | None = None,
        new_state: LifecycleState | None = None,
    ) -> None:
        self._changed.set()
        self._context.component_events.publish(
            ComponentStateChanged(
                change=change,
                component=component.record(),
                old_state=old_state,
                new_state=new_state,
            )
        )
