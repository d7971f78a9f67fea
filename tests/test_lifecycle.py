from __future__ import annotations

import asyncio

import pytest

from pyfleet.config import FleetConfig
from pyfleet.config_store import ChangeSet
from pyfleet.context import FleetContext
from pyfleet.models.component import ComponentKind, ComponentSpec, LifecycleState, LifecycleStep
from pyfleet.state.events import ComponentChange, ComponentStateChanged


class _ScriptedSupervisor:
    """Treats each script as the outcome to simulate."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    async def run(self, component: str, step: LifecycleStep, script: str) -> int:
        self.calls.append((component, str(step)))
        if script == "forever":
            await asyncio.Event().wait()
        if script == "crash-later":
            await asyncio.sleep(0.1)
            return 1
        return 1 if script == "fail" else 0


def _context() -> tuple[FleetContext, _ScriptedSupervisor]:
    supervisor = _ScriptedSupervisor()
    config = FleetConfig(
        thing_name="device-1",
        component_retry_limit=3,
        component_retry_delay=0.0,
        startup_health_window=0.05,
        status_interval=0,
    )
    return FleetContext(config, supervisor=supervisor), supervisor


async def _add(context: FleetContext, name: str, spec: ComponentSpec) -> None:
    context.config_store.commit(ChangeSet(added={name: spec.to_config()}))
    await context.registry.upsert(name, spec)


async def _close(context: FleetContext) -> None:
    for name in context.registry.names():
        await context.registry.lifecycle(name).close()


@pytest.mark.asyncio
async def test_install_failing_three_times_ends_broken() -> None:
    context, supervisor = _context()
    await _add(context, "steady", ComponentSpec(version="1.0.0", lifecycle={"run": "forever"}))
    await _add(context, "flaky", ComponentSpec(version="1.0.0", lifecycle={"install": "fail", "run": "forever"}))
    steady = context.registry.lifecycle("steady")
    await steady.request_start()
    assert steady.state == LifecycleState.RUNNING

    steady_events: list[ComponentStateChanged] = []
    context.component_events.subscribe(lambda e: steady_events.append(e) if e.name == "steady" else None)

    flaky = context.registry.lifecycle("flaky")
    await asyncio.wait_for(flaky.request_start(), timeout=2.0)

    assert flaky.state == LifecycleState.BROKEN
    assert supervisor.calls.count(("flaky", "install")) == 3
    assert ("flaky", "run") not in supervisor.calls
    assert steady.state == LifecycleState.RUNNING
    assert steady_events == []
    await _close(context)


@pytest.mark.asyncio
async def test_start_waits_for_hard_dependency() -> None:
    context, _ = _context()
    await _add(context, "db", ComponentSpec(version="1.0.0", lifecycle={"run": "forever"}))
    await _add(context, "app", ComponentSpec(version="1.0.0", dependencies=["db"], lifecycle={"run": "ok"}))
    transitions: list[tuple[str, LifecycleState | None]] = []
    context.component_events.subscribe(
        lambda e: transitions.append((e.name, e.new_state)) if e.change == ComponentChange.STATE else None
    )

    app = context.registry.lifecycle("app")
    app.request_start()
    await asyncio.sleep(0.02)
    assert app.state == LifecycleState.INSTALLED

    context.registry.lifecycle("db").request_start()
    assert await context.registry.wait_for(lambda: app.state == LifecycleState.FINISHED, timeout=2.0)

    assert transitions.index(("db", LifecycleState.RUNNING)) < transitions.index(("app", LifecycleState.STARTING))
    await _close(context)


@pytest.mark.asyncio
async def test_soft_dependency_does_not_block_start_but_blocks_readiness() -> None:
    context, _ = _context()
    await _add(context, "metrics", ComponentSpec(version="1.0.0", lifecycle={"install": "ok", "run": "forever"}))
    await _add(
        context,
        "app",
        ComponentSpec(version="1.0.0", dependencies={"metrics": "SOFT"}, lifecycle={"run": "forever"}),
    )

    app = context.registry.lifecycle("app")
    await app.request_start()
    assert app.state == LifecycleState.RUNNING
    assert not app.is_ready

    await context.registry.lifecycle("metrics").request_start()
    assert app.is_ready
    await _close(context)


@pytest.mark.asyncio
async def test_runtime_failure_is_retried_then_broken() -> None:
    context, supervisor = _context()
    await _add(context, "svc", ComponentSpec(version="1.0.0", lifecycle={"run": "crash-later"}))
    lifecycle = context.registry.lifecycle("svc")
    states: list[LifecycleState | None] = []
    context.component_events.subscribe(lambda e: states.append(e.new_state))

    lifecycle.request_start()
    assert await context.registry.wait_for(lambda: lifecycle.state == LifecycleState.BROKEN, timeout=3.0)

    assert supervisor.calls.count(("svc", "run")) == 3
    assert states.count(LifecycleState.ERRORED) == 3
    assert states.count(LifecycleState.RUNNING) == 3
    await _close(context)


@pytest.mark.asyncio
async def test_stop_runs_shutdown_and_finishes() -> None:
    context, supervisor = _context()
    await _add(context, "svc", ComponentSpec(version="1.0.0", lifecycle={"run": "forever", "shutdown": "ok"}))
    lifecycle = context.registry.lifecycle("svc")
    await lifecycle.request_start()
    assert lifecycle.state == LifecycleState.RUNNING

    await lifecycle.stop()

    assert lifecycle.state == LifecycleState.FINISHED
    assert ("svc", "shutdown") in supervisor.calls


@pytest.mark.asyncio
async def test_request_stop_returns_task_that_finishes_component() -> None:
    context, supervisor = _context()
    await _add(context, "svc", ComponentSpec(version="1.0.0", lifecycle={"run": "forever", "shutdown": "ok"}))
    lifecycle = context.registry.lifecycle("svc")
    await lifecycle.request_start()
    states: list[LifecycleState | None] = []
    context.component_events.subscribe(
        lambda e: states.append(e.new_state) if e.change == ComponentChange.STATE else None
    )

    task = lifecycle.request_stop()
    assert isinstance(task, asyncio.Task)
    await asyncio.wait_for(task, timeout=2.0)

    assert lifecycle.state == LifecycleState.FINISHED
    assert states == [LifecycleState.STOPPING, LifecycleState.FINISHED]
    assert supervisor.calls.count(("svc", "shutdown")) == 1


@pytest.mark.asyncio
async def test_reset_of_running_component_shuts_it_down_first(caplog: pytest.LogCaptureFixture) -> None:
    context, supervisor = _context()
    await _add(context, "svc", ComponentSpec(version="1.0.0", lifecycle={"run": "forever", "shutdown": "ok"}))
    lifecycle = context.registry.lifecycle("svc")
    await lifecycle.request_start()
    states: list[LifecycleState | None] = []
    context.component_events.subscribe(
        lambda e: states.append(e.new_state) if e.change == ComponentChange.STATE else None
    )

    with caplog.at_level("WARNING", logger="pyfleet.lifecycle.state_machine"):
        await lifecycle.reset()

    assert lifecycle.state == LifecycleState.NEW
    assert states == [LifecycleState.STOPPING, LifecycleState.FINISHED, LifecycleState.NEW]
    assert ("svc", "shutdown") in supervisor.calls
    assert not [r for r in caplog.records if "Unexpected transition" in r.getMessage()]


@pytest.mark.asyncio
async def test_bootstrap_returns_component_to_new() -> None:
    context, supervisor = _context()
    await _add(context, "svc", ComponentSpec(version="1.0.0", lifecycle={"bootstrap": "ok"}))
    lifecycle = context.registry.lifecycle("svc")

    assert await lifecycle.bootstrap() is True
    assert lifecycle.state == LifecycleState.NEW
    assert supervisor.calls == [("svc", "bootstrap")]


@pytest.mark.asyncio
async def test_builtin_component_uses_registered_hooks() -> None:
    context, supervisor = _context()
    ran: list[str] = []

    async def _install() -> None:
        ran.append("install")

    async def _startup() -> int:
        ran.append("startup")
        return 0

    context.register_builtin("telemetry", {LifecycleStep.INSTALL: _install, LifecycleStep.STARTUP: _startup})
    await _add(context, "telemetry", ComponentSpec(version="1.0.0", kind=ComponentKind.BUILTIN))
    lifecycle = context.registry.lifecycle("telemetry")

    await lifecycle.request_start()

    assert lifecycle.state == LifecycleState.RUNNING
    assert ran == ["install", "startup"]
    assert supervisor.calls == []
