from __future__ import annotations

import pytest

from pyfleet.config import FleetConfig
from pyfleet.context import FleetContext
from pyfleet.exceptions import DependencyCycleError, DeploymentValidationError
from pyfleet.models.component import ComponentSpec, LifecycleState
from pyfleet.registry import topological_order, validate_dependency_graph
from pyfleet.state.events import ComponentChange, ComponentStateChanged


def test_topological_order_puts_dependencies_first() -> None:
    graph = {"app": {"broker", "db"}, "broker": {"db"}, "db": set(), "cli": set()}
    assert topological_order(graph) == ["cli", "db", "broker", "app"]


def test_topological_order_ignores_edges_outside_subset() -> None:
    graph = {"app": {"broker"}, "broker": {"db"}, "db": set()}
    assert topological_order(graph, ["app", "db"]) == ["app", "db"]


def test_hard_cycle_is_reported_with_path() -> None:
    graph = {"a": {"b"}, "b": {"c"}, "c": {"a"}, "d": set()}
    with pytest.raises(DependencyCycleError) as excinfo:
        validate_dependency_graph(graph, graph)
    assert excinfo.value.cycle[0] == excinfo.value.cycle[-1]
    assert set(excinfo.value.cycle) == {"a", "b", "c"}


def test_soft_cycle_is_allowed() -> None:
    graph = {"a": {"b"}, "b": {"a"}}
    validate_dependency_graph(graph, {"a": set(), "b": set()})


def test_unknown_dependency_is_a_validation_error() -> None:
    with pytest.raises(DeploymentValidationError, match="unknown"):
        validate_dependency_graph({"a": {"ghost"}}, {"a": {"ghost"}})


@pytest.mark.asyncio
async def test_upsert_registers_then_updates_metadata() -> None:
    context = FleetContext(FleetConfig(thing_name="device-1"))
    events: list[ComponentStateChanged] = []
    context.component_events.subscribe(events.append)
    registry = context.registry

    await registry.upsert("app", ComponentSpec(version="1.0.0", dependencies=["db"]), fleet_config_arn="d-1")
    await registry.upsert("app", ComponentSpec(version="1.1.0", is_root=False), fleet_config_arn="d-2")

    component = registry.get("app")
    assert component is not None
    assert component.desired_version == "1.1.0"
    assert component.hard_dependencies == set()
    assert component.is_root is False
    assert component.fleet_config_arns == {"d-1", "d-2"}
    assert component.state == LifecycleState.NEW
    assert [e.change for e in events] == [ComponentChange.REGISTERED, ComponentChange.UPDATED]


@pytest.mark.asyncio
async def test_dependents_closure_and_blocked_detection() -> None:
    context = FleetContext(FleetConfig(thing_name="device-1"))
    registry = context.registry
    await registry.upsert("db", ComponentSpec(version="1"))
    await registry.upsert("broker", ComponentSpec(version="1", dependencies={"db": "hard"}))
    await registry.upsert("app", ComponentSpec(version="1", dependencies={"broker": "HARD", "metrics": "SOFT"}))
    await registry.upsert("metrics", ComponentSpec(version="1"))

    assert registry.dependents_closure({"db"}) == {"db", "broker", "app"}
    assert registry.start_order() == ["db", "broker", "app", "metrics"]

    db = registry.get("db")
    assert db is not None
    db.state = LifecycleState.BROKEN
    assert registry.is_blocked("app")
    assert registry.is_blocked("broker")
    assert not registry.is_blocked("metrics")


@pytest.mark.asyncio
async def test_export_and_restore_drop_added_components() -> None:
    context = FleetContext(FleetConfig(thing_name="device-1"))
    registry = context.registry
    await registry.upsert("app", ComponentSpec(version="1.0.0"), fleet_config_arn="d-1")
    shadow = registry.export()

    await registry.upsert("app", ComponentSpec(version="2.0.0"), fleet_config_arn="d-2")
    await registry.upsert("extra", ComponentSpec(version="1.0.0"))
    await registry.restore(shadow)

    assert registry.names() == ["app"]
    app = registry.get("app")
    assert app is not None
    assert app.desired_version == "1.0.0"
    assert app.fleet_config_arns == {"d-1"}
