from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from pyfleet.artifacts import ArtifactHandle
from pyfleet.config import FleetConfig
from pyfleet.context import FleetContext
from pyfleet.deployment.processor import DeploymentProcessor
from pyfleet.exceptions import ArtifactResolveError, RollbackError
from pyfleet.models.component import LifecycleState, LifecycleStep
from pyfleet.models.deployment import Deployment, DeploymentStatus, DeploymentType
from pyfleet.models.status import OverallStatus
from pyfleet.state.events import ComponentChange, DeploymentEvent, DeploymentPhase
from pyfleet.status.reporter import FleetStatusReporter


class _ScriptedSupervisor:
    """Treats each script as the outcome to simulate."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str]] = []

    async def run(self, component: str, step: LifecycleStep, script: str) -> int:
        self.calls.append((component, str(step), script))
        if script.startswith("forever"):
            await asyncio.Event().wait()
        if script.startswith("slow"):
            await asyncio.sleep(0.2)
        return 1 if script.startswith("fail") else 0


class _ArtifactStore:
    def __init__(self, missing: set[tuple[str, str]] | None = None) -> None:
        self.missing = missing or set()
        self.resolved: list[tuple[str, str]] = []

    async def resolve(self, name: str, version: str) -> ArtifactHandle:
        if (name, version) in self.missing:
            raise ArtifactResolveError(f"no artifact for {name}@{version}")
        self.resolved.append((name, version))
        return ArtifactHandle(name=name, version=version, path=Path("/artifacts") / name / version)


class _RecordingPubSub:
    def __init__(self) -> None:
        self.published: list[tuple[str, dict[str, Any]]] = []

    def subscribe(self, topic: str, handler: Any) -> None:
        pass

    def unsubscribe(self, topic: str) -> None:
        pass

    async def publish(self, topic: str, payload: bytes, *, qos: int = 1) -> None:
        self.published.append((topic, json.loads(payload)))


def _context(**overrides: Any) -> tuple[FleetContext, _ScriptedSupervisor, _ArtifactStore]:
    supervisor = _ScriptedSupervisor()
    artifacts = _ArtifactStore()
    settings: dict[str, Any] = {
        "thing_name": "device-1",
        "component_retry_limit": 3,
        "component_retry_delay": 0.0,
        "startup_health_window": 0.05,
        "settle_timeout": 5.0,
        "status_debounce": 0.0,
        "status_interval": 0,
    }
    settings.update(overrides)
    context = FleetContext(FleetConfig(**settings), supervisor=supervisor, artifact_store=artifacts)
    return context, supervisor, artifacts


def _deploy(document: dict[str, Any], deployment_id: str) -> Deployment:
    return Deployment.create(document, deployment_type=DeploymentType.CLOUD_JOB, deployment_id=deployment_id)


async def _shutdown(context: FleetContext) -> None:
    registry = context.registry
    for name in reversed(registry.start_order()):
        await registry.lifecycle(name).stop()
    for name in registry.names():
        await registry.lifecycle(name).close()


_APP_AND_BROKER = {
    "components": {
        "App": {
            "version": "1.0.0",
            "isRoot": True,
            "dependencies": {"Broker": "HARD"},
            "lifecycle": {"run": "exit-zero"},
        },
        "Broker": {"version": "1.0.0", "isRoot": False, "lifecycle": {"run": "forever"}},
    },
    "fleetConfigArn": "arn:fleet:configuration:group-1:1",
}


@pytest.mark.asyncio
async def test_root_component_with_dependency_reports_full_inventory() -> None:
    context, _, _ = _context()
    pubsub = _RecordingPubSub()
    reporter = FleetStatusReporter(context, pubsub)
    reporter.start()
    processor = DeploymentProcessor(context)

    status = await processor.process(_deploy(_APP_AND_BROKER, "job-1"))
    await reporter.flush()

    assert status == DeploymentStatus.SUCCEEDED
    snapshot = reporter.last_published
    assert snapshot is not None
    assert snapshot.overall_status == OverallStatus.HEALTHY
    by_name = {c.name: c for c in snapshot.components}
    assert by_name["App"].state == LifecycleState.FINISHED
    assert by_name["App"].is_root is True
    assert by_name["Broker"].state == LifecycleState.RUNNING
    assert by_name["Broker"].is_root is False
    for component in by_name.values():
        assert component.version == "1.0.0"
        assert component.fleet_config_arns == ["arn:fleet:configuration:group-1:1"]

    await reporter.stop()
    await _shutdown(context)


@pytest.mark.asyncio
async def test_snapshot_lists_every_component_regardless_of_last_deployment() -> None:
    context, _, _ = _context()
    pubsub = _RecordingPubSub()
    reporter = FleetStatusReporter(context, pubsub)
    reporter.start()
    processor = DeploymentProcessor(context)

    await processor.process(_deploy(_APP_AND_BROKER, "job-1"))
    await processor.process(
        _deploy({"components": {"Logger": {"version": "2.0.0", "lifecycle": {"run": "forever"}}}}, "job-2")
    )
    await reporter.flush()

    assert pubsub.published
    for _, payload in pubsub.published:
        assert len(payload["components"]) <= len(context.registry)
    final = pubsub.published[-1][1]
    assert len(final["components"]) == len(context.registry) == 3
    assert {c["name"] for c in final["components"]} == {"App", "Broker", "Logger"}

    await reporter.stop()
    await _shutdown(context)


@pytest.mark.asyncio
async def test_at_most_one_deployment_in_progress() -> None:
    context, _, _ = _context()
    processor = DeploymentProcessor(context)
    in_progress = 0
    peak = 0

    def _track(event: DeploymentEvent) -> None:
        nonlocal in_progress, peak
        if event.phase == DeploymentPhase.STARTED:
            in_progress += 1
            peak = max(peak, in_progress)
        else:
            in_progress -= 1

    context.deployment_events.subscribe(_track)
    deployments = [
        _deploy({"components": {f"svc-{i}": {"version": "1.0.0", "lifecycle": {"run": "forever"}}}}, f"job-{i}")
        for i in range(3)
    ]
    processor.start()
    for deployment in deployments:
        processor.offer(deployment)

    for deployment in deployments:
        assert await deployment.wait(timeout=5.0) == DeploymentStatus.SUCCEEDED

    assert peak == 1
    assert [record.deployment_id for record in processor.history] == ["job-0", "job-1", "job-2"]
    await processor.stop()
    await _shutdown(context)


@pytest.mark.asyncio
async def test_bootstrap_failure_on_second_component_restores_and_restarts_first() -> None:
    context, supervisor, artifacts = _context()
    processor = DeploymentProcessor(context)
    initial = {
        "components": {
            "Alpha": {"version": "1.0.0", "lifecycle": {"bootstrap": "boot-1", "run": "forever-a1"}},
            "Beta": {"version": "1.0.0", "lifecycle": {"run": "forever-b1"}},
        }
    }
    assert await processor.process(_deploy(initial, "job-1")) == DeploymentStatus.SUCCEEDED
    alpha = context.registry.lifecycle("Alpha")
    assert alpha.state == LifecycleState.RUNNING

    artifacts.missing.add(("Beta", "2.0.0"))
    update = {
        "components": {
            "Alpha": {"version": "2.0.0", "lifecycle": {"bootstrap": "boot-2", "run": "forever-a2"}},
            "Beta": {"version": "2.0.0", "lifecycle": {"run": "forever-b2"}},
        }
    }
    deployment = _deploy(update, "job-2")
    status = await processor.process(deployment)

    assert status == DeploymentStatus.FAILED
    assert deployment.status_details["error"] == "ArtifactResolveError"
    assert context.config_store.service("Alpha")["version"] == "1.0.0"
    assert context.config_store.service("Beta")["version"] == "1.0.0"
    alpha_record = context.registry.get("Alpha")
    assert alpha_record is not None
    assert alpha_record.state == LifecycleState.RUNNING
    assert alpha_record.applied_version == "1.0.0"
    assert context.registry.state_of("Beta") == LifecycleState.RUNNING
    # Alpha was stopped and restarted from the restored configuration
    alpha_runs = [script for name, step, script in supervisor.calls if name == "Alpha" and step == "run"]
    assert alpha_runs == ["forever-a1", "forever-a1"]
    assert ("Alpha", "bootstrap", "boot-2") not in supervisor.calls

    await _shutdown(context)


@pytest.mark.asyncio
async def test_broken_component_fails_deployment_without_touching_others() -> None:
    context, supervisor, _ = _context()
    pubsub = _RecordingPubSub()
    reporter = FleetStatusReporter(context, pubsub)
    reporter.start()
    processor = DeploymentProcessor(context)
    steady = {"components": {"Steady": {"version": "1.0.0", "lifecycle": {"run": "forever"}}}}
    await processor.process(_deploy(steady, "job-1"))
    steady_transitions: list[LifecycleState | None] = []
    context.component_events.subscribe(
        lambda e: steady_transitions.append(e.new_state)
        if e.name == "Steady" and e.change == ComponentChange.STATE
        else None
    )

    deployment = _deploy({"components": {"Flaky": {"version": "1.0.0", "lifecycle": {"install": "fail"}}}}, "job-2")
    status = await processor.process(deployment)
    await reporter.flush()

    assert status == DeploymentStatus.FAILED
    assert deployment.status_details["brokenComponents"] == "Flaky"
    assert context.registry.state_of("Flaky") == LifecycleState.BROKEN
    assert context.registry.state_of("Steady") == LifecycleState.RUNNING
    assert steady_transitions == []
    assert [c for c in supervisor.calls if c[0] == "Steady"] == [("Steady", "run", "forever")]
    assert [c for c in supervisor.calls if c[0] == "Flaky"] == [("Flaky", "install", "fail")] * 3
    assert reporter.last_published is not None
    assert reporter.last_published.overall_status == OverallStatus.UNHEALTHY

    await reporter.stop()
    await _shutdown(context)


@pytest.mark.asyncio
async def test_dependency_cycle_is_rejected_before_any_change() -> None:
    context, supervisor, _ = _context()
    processor = DeploymentProcessor(context)
    document = {
        "components": {
            "A": {"version": "1.0.0", "dependencies": ["B"]},
            "B": {"version": "1.0.0", "dependencies": ["A"]},
        }
    }
    deployment = _deploy(document, "job-1")

    assert await processor.process(deployment) == DeploymentStatus.FAILED
    assert deployment.status_details["reason"] == "validation"
    assert len(context.registry) == 0
    assert context.config_store.service_names() == []
    assert supervisor.calls == []


@pytest.mark.asyncio
async def test_removal_only_happens_when_listed() -> None:
    context, _, _ = _context()
    processor = DeploymentProcessor(context)
    await processor.process(_deploy(_APP_AND_BROKER, "job-1"))
    await processor.process(_deploy({"components": {"Extra": {"version": "1.0.0"}}}, "job-2"))
    assert context.registry.names() == ["App", "Broker", "Extra"]

    status = await processor.process(_deploy({"removals": ["Extra"]}, "job-3"))

    assert status == DeploymentStatus.SUCCEEDED
    assert context.registry.names() == ["App", "Broker"]
    assert "Extra" not in context.config_store.service_names()
    await _shutdown(context)


@pytest.mark.asyncio
async def test_cancelled_before_start_is_not_applied() -> None:
    context, supervisor, _ = _context()
    processor = DeploymentProcessor(context)
    deployment = _deploy(_APP_AND_BROKER, "job-1")
    deployment.request_cancel()

    assert await processor.process(deployment) == DeploymentStatus.CANCELLED
    assert len(context.registry) == 0
    assert supervisor.calls == []


@pytest.mark.asyncio
async def test_failed_restore_is_fatal() -> None:
    context, _, artifacts = _context()
    processor = DeploymentProcessor(context)
    events: list[DeploymentEvent] = []
    context.deployment_events.subscribe(events.append)
    artifacts.missing.add(("App", "1.0.0"))

    def _broken_restore(snapshot: Any) -> None:
        raise ValueError("disk gone")

    context.config_store.restore = _broken_restore  # type: ignore[method-assign]
    deployment = _deploy(_APP_AND_BROKER, "job-1")

    with pytest.raises(RollbackError):
        await processor.process(deployment)

    assert deployment.status == DeploymentStatus.FAILED
    assert events[-1].phase == DeploymentPhase.COMPLETED
    assert events[-1].fatal is True
    await _shutdown(context)


@pytest.mark.asyncio
async def test_applied_state_is_persisted(tmp_path: Path) -> None:
    context, _, _ = _context(state_dir=str(tmp_path))
    processor = DeploymentProcessor(context)

    await processor.process(_deploy(_APP_AND_BROKER, "job-1"))

    persisted = json.loads((tmp_path / "applied_state.json").read_text())
    assert persisted["lastDeploymentId"] == "job-1"
    assert persisted["rootComponents"] == ["App"]
    assert set(persisted["services"]) == {"App", "Broker"}
    await _shutdown(context)


class _CancellingArtifactStore(_ArtifactStore):
    """Requests cancellation of *deployment* while resolving *trigger*."""

    def __init__(self, trigger: str) -> None:
        super().__init__()
        self.trigger = trigger
        self.deployment: Deployment | None = None

    async def resolve(self, name: str, version: str) -> ArtifactHandle:
        if name == self.trigger and self.deployment is not None:
            self.deployment.request_cancel()
        return await super().resolve(name, version)


@pytest.mark.asyncio
async def test_cancel_during_apply_rolls_back_at_next_checkpoint() -> None:
    context, supervisor, _ = _context()
    artifacts = _CancellingArtifactStore("Broker")
    context.artifact_store = artifacts
    processor = DeploymentProcessor(context)
    deployment = _deploy(_APP_AND_BROKER, "job-1")
    artifacts.deployment = deployment

    assert await processor.process(deployment) == DeploymentStatus.CANCELLED

    assert deployment.status_details == {"reason": "cancelled"}
    assert artifacts.resolved == [("Broker", "1.0.0")]
    assert len(context.registry) == 0
    assert context.config_store.service_names() == []
    assert supervisor.calls == []


@pytest.mark.asyncio
async def test_unchanged_components_are_not_restarted() -> None:
    context, supervisor, _ = _context()
    processor = DeploymentProcessor(context)
    app = {"version": "1.0.0", "lifecycle": {"run": "exit-zero"}}
    assert await processor.process(_deploy({"components": {"App": app}}, "job-1")) == DeploymentStatus.SUCCEEDED
    assert context.registry.state_of("App") == LifecycleState.FINISHED
    app_transitions: list[LifecycleState | None] = []
    context.component_events.subscribe(
        lambda e: app_transitions.append(e.new_state) if e.name == "App" and e.change == ComponentChange.STATE else None
    )

    update = {
        "components": {
            "App": {**app, "configuration": {"level": "debug"}},
            "Other": {"version": "1.0.0", "lifecycle": {"run": "forever"}},
        }
    }
    assert await processor.process(_deploy(update, "job-2")) == DeploymentStatus.SUCCEEDED

    assert app_transitions == []
    assert supervisor.calls.count(("App", "run", "exit-zero")) == 1
    assert context.registry.state_of("App") == LifecycleState.FINISHED
    assert context.registry.state_of("Other") == LifecycleState.RUNNING
    assert context.config_store.service("App")["configuration"] == {"level": "debug"}
    await _shutdown(context)


@pytest.mark.asyncio
async def test_stopping_processor_mid_deployment_rolls_back() -> None:
    context, supervisor, _ = _context()
    processor = DeploymentProcessor(context)
    events: list[DeploymentEvent] = []
    context.deployment_events.subscribe(events.append)
    document = {"components": {"Slow": {"version": "1.0.0", "lifecycle": {"install": "slow", "run": "forever"}}}}
    deployment = _deploy(document, "job-1")

    processor.start()
    processor.offer(deployment)
    assert await context.registry.wait_for(lambda: "Slow" in context.registry, timeout=2.0)
    await asyncio.sleep(0.05)
    await processor.stop()

    assert deployment.status == DeploymentStatus.CANCELLED
    assert deployment.status_details == {"reason": "agent stopped"}
    assert len(context.registry) == 0
    assert context.config_store.service_names() == []
    assert ("Slow", "run", "forever") not in supervisor.calls
    assert events[-1].phase == DeploymentPhase.COMPLETED
    assert events[-1].status == DeploymentStatus.CANCELLED
    assert not processor.running
    assert processor.fatal_error is None
