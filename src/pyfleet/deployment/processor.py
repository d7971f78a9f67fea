"""Single-worker deployment processor.

One task pulls deployments off :class:`~pyfleet.deployment.queue.DeploymentQueue`
and applies them one at a time, so at most one deployment is ever
``IN_PROGRESS``.  Per deployment:

1. diff the document against the live configuration
2. validate the resulting dependency graph (before anything is touched)
3. classify as bootstrap or in-place and apply, keeping a shadow copy of
   the configuration and registry metadata
4. on any failure restore the shadow copy, restart whatever was stopped
   and report ``FAILED``; a failed restore is fatal

Components a deployment leaves untouched are never restarted.  Stopping
the processor mid-deployment rolls back the same way and reports
``CANCELLED``.
"""

from __future__ import annotations

import asyncio
import collections
import contextlib
import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pyfleet._constants import APPLIED_STATE_FILE, KIND_KEY, LIFECYCLE_KEY, VERSION_KEY
from pyfleet.config_store import ChangeSet, bootstrap_required
from pyfleet.exceptions import (
    DeploymentCancelledError,
    DeploymentValidationError,
    FleetError,
    RollbackError,
)
from pyfleet.models.component import LifecycleState
from pyfleet.models.deployment import Deployment, DeploymentRecord, DeploymentStatus
from pyfleet.registry import topological_order, validate_dependency_graph
from pyfleet.state.events import DeploymentEvent, DeploymentPhase

if TYPE_CHECKING:
    from pyfleet.context import FleetContext

_logger = logging.getLogger(__name__)


def _needs_restart(current: Mapping[str, Any], new: Mapping[str, Any]) -> bool:
    """Whether an in-place change still needs the component restarted."""
    return any(current.get(key) != new.get(key) for key in (VERSION_KEY, KIND_KEY, LIFECYCLE_KEY))


class DeploymentProcessor:
    """Applies queued deployments against the component graph."""

    def __init__(self, context: FleetContext) -> None:
        self._context = context
        self._task: asyncio.Task[None] | None = None
        self.history: collections.deque[DeploymentRecord] = collections.deque(maxlen=context.config.history_size)
        self.fatal_error: RollbackError | None = None
        self._stopping = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def offer(self, deployment: Deployment) -> bool:
        return self._context.queue.offer(deployment)

    def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        self._task = asyncio.get_running_loop().create_task(self._run(), name="deployment-processor")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        self._stopping = True
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        queue = self._context.queue
        while True:
            deployment = await queue.get()
            try:
                await self.process(deployment)
            except RollbackError as exc:
                self.fatal_error = exc
                _logger.error("Deployment %s left the device inconsistent", deployment.deployment_id, exc_info=True)
                if self._stopping:
                    return

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process(self, deployment: Deployment) -> DeploymentStatus:
        """Apply one deployment and return its terminal status.

        Raises
        ------
        RollbackError
            If the shadow configuration could not be restored.  The
            deployment is still reported ``FAILED`` first.
        """
        queue = self._context.queue
        queue.mark_in_progress(deployment)
        try:
            if deployment.cancel_requested:
                _logger.info("Deployment %s cancelled before it started", deployment.deployment_id)
                deployment.finish(DeploymentStatus.CANCELLED, {"reason": "cancelled before start"})
                self._completed(deployment)
                return deployment.status

            deployment.status = DeploymentStatus.IN_PROGRESS
            _logger.info("Processing %s deployment %s", deployment.deployment_type, deployment.deployment_id)
            self._publish(deployment, DeploymentPhase.STARTED)

            try:
                status, details = await self._apply(deployment)
            except DeploymentValidationError as exc:
                _logger.warning("Deployment %s rejected: %s", deployment.deployment_id, exc)
                deployment.finish(DeploymentStatus.FAILED, {"reason": "validation", "message": str(exc)})
            except DeploymentCancelledError:
                _logger.info("Deployment %s cancelled and rolled back", deployment.deployment_id)
                deployment.finish(DeploymentStatus.CANCELLED, {"reason": "cancelled"})
            except RollbackError as exc:
                deployment.finish(DeploymentStatus.FAILED, {"reason": "rollback failed", "message": str(exc)})
                self._completed(deployment, fatal=True)
                raise
            except Exception as exc:
                _logger.warning("Deployment %s failed and was rolled back: %s", deployment.deployment_id, exc)
                deployment.finish(
                    DeploymentStatus.FAILED,
                    {"reason": "apply failed", "error": type(exc).__name__, "message": str(exc)},
                )
            except asyncio.CancelledError:
                _logger.info("Deployment %s interrupted by agent shutdown and rolled back", deployment.deployment_id)
                deployment.finish(DeploymentStatus.CANCELLED, {"reason": "agent stopped"})
                self._completed(deployment)
                raise
            else:
                deployment.finish(status, details)
            self._completed(deployment)
            return deployment.status
        finally:
            queue.mark_done(deployment)

    async def _apply(self, deployment: Deployment) -> tuple[DeploymentStatus, dict[str, str]]:
        context = self._context
        registry = context.registry
        change_set = context.config_store.diff(deployment.document)
        self._validate(deployment, change_set)

        bootstrap_names = {
            name for name in (*change_set.added, *change_set.changed) if self._bootstrap_required(name, change_set)
        }
        shadow_config = context.config_store.snapshot()
        shadow_records = registry.export()
        stopped: list[str] = []

        try:
            if bootstrap_names:
                _logger.info("Bootstrap deployment %s: %s", deployment.deployment_id, sorted(bootstrap_names))
                started = await self._apply_bootstrap(deployment, change_set, bootstrap_names, stopped)
            else:
                started = await self._apply_in_place(deployment, change_set, stopped)
            targets = set(started)
            settled = await registry.wait_for(
                lambda: all(registry.is_settled(name) for name in targets), context.config.settle_timeout
            )
        except (Exception, asyncio.CancelledError) as exc:
            await self._rollback(deployment, shadow_config, shadow_records, stopped, cause=exc)
            raise

        broken = sorted(name for name in targets if registry.state_of(name) == LifecycleState.BROKEN)
        blocked = sorted(name for name in targets if name not in broken and registry.is_blocked(name))
        await self._persist(deployment)

        if broken:
            _logger.warning("Deployment %s left broken components %s", deployment.deployment_id, broken)
            details = {"reason": "components broken", "brokenComponents": ",".join(broken)}
            if blocked:
                details["blockedComponents"] = ",".join(blocked)
            return DeploymentStatus.FAILED, details
        if not settled:
            pending = sorted(name for name in targets if not registry.is_settled(name))
            return DeploymentStatus.FAILED, {"reason": "timed out", "pendingComponents": ",".join(pending)}
        _logger.info("Deployment %s succeeded", deployment.deployment_id)
        return DeploymentStatus.SUCCEEDED, {}

    def _validate(self, deployment: Deployment, change_set: ChangeSet) -> None:
        registry = self._context.registry
        document = deployment.document
        graph = registry.dependency_graph()
        hard_graph = registry.dependency_graph(hard_only=True)
        for name in change_set.removed:
            graph.pop(name, None)
            hard_graph.pop(name, None)
        for name, spec in document.components.items():
            graph[name] = set(spec.dependencies)
            hard_graph[name] = set(spec.hard_dependencies)
        validate_dependency_graph(graph, hard_graph)

    def _bootstrap_required(self, name: str, change_set: ChangeSet) -> bool:
        new_config = change_set.new_config(name) or {}
        if name in self._context.registry:
            return self._context.registry.lifecycle(name).is_bootstrap_required(new_config)
        return bootstrap_required({}, new_config)

    async def _apply_bootstrap(
        self,
        deployment: Deployment,
        change_set: ChangeSet,
        bootstrap_names: set[str],
        stopped: list[str],
    ) -> list[str]:
        registry = self._context.registry
        affected = {name for name in change_set.affected if name in registry}
        closure = registry.dependents_closure(affected)
        await self._stop_all(registry.start_order(closure), stopped)

        for name in change_set.removed:
            await registry.remove(name)
            self._context.config_store.commit(change_set.subset({name}))

        order = self._document_order(deployment)
        for name in order:
            self._checkpoint(deployment)
            await self._apply_component(deployment, name, change_set)

        failed_bootstrap: set[str] = set()
        for name in order:
            if name in bootstrap_names:
                self._checkpoint(deployment)
                if not await registry.lifecycle(name).bootstrap():
                    failed_bootstrap.add(name)

        restart = closure | set(change_set.added) | set(change_set.changed) | self._idle(order)
        to_start = [n for n in registry.start_order(restart) if n not in failed_bootstrap]
        for name in to_start:
            if name in change_set.added or name in change_set.changed:
                await registry.lifecycle(name).reset()
        for name in to_start:
            self._checkpoint(deployment)
            registry.lifecycle(name).request_start()
        return to_start

    async def _apply_in_place(self, deployment: Deployment, change_set: ChangeSet, stopped: list[str]) -> list[str]:
        context = self._context
        registry = context.registry
        removed = [name for name in change_set.removed if name in registry]
        await self._stop_all(registry.start_order(removed), stopped)
        for name in removed:
            await registry.remove(name)
            context.config_store.commit(change_set.subset({name}))

        order = self._document_order(deployment)
        restarted: list[str] = []
        for name in order:
            self._checkpoint(deployment)
            new_config = change_set.changed.get(name)
            if new_config is not None and _needs_restart(context.config_store.service(name), new_config):
                await self._stop_all([name], stopped)
                await self._apply_component(deployment, name, change_set)
                await registry.lifecycle(name).reset()
                restarted.append(name)
            else:
                await self._apply_component(deployment, name, change_set)

        idle = self._idle(order)
        to_start = [n for n in order if n in change_set.added or n in restarted or n in idle]
        for name in to_start:
            self._checkpoint(deployment)
            registry.lifecycle(name).request_start()
        return to_start

    async def _apply_component(self, deployment: Deployment, name: str, change_set: ChangeSet) -> None:
        context = self._context
        spec = deployment.document.components[name]
        if name in change_set.added or name in change_set.changed:
            if context.artifact_store is not None:
                await context.artifact_store.resolve(name, spec.version)
            context.config_store.commit(change_set.subset({name}))
        await context.registry.upsert(name, spec, fleet_config_arn=deployment.fleet_config_arn)

    def _idle(self, names: Iterable[str]) -> set[str]:
        """Those of *names* that were never started or are still installing."""
        registry = self._context.registry
        return {n for n in names if registry.state_of(n) in (LifecycleState.NEW, LifecycleState.INSTALLED)}

    def _document_order(self, deployment: Deployment) -> list[str]:
        components = deployment.document.components
        graph = {name: spec.hard_dependencies for name, spec in components.items()}
        return topological_order(graph, components)

    async def _stop_all(self, start_order: Iterable[str], stopped: list[str]) -> None:
        """Stop components in reverse of *start_order*, recording each one."""
        registry = self._context.registry
        for name in reversed(list(start_order)):
            if name in stopped or name not in registry:
                continue
            await registry.lifecycle(name).stop()
            stopped.append(name)

    def _checkpoint(self, deployment: Deployment) -> None:
        if deployment.cancel_requested:
            raise DeploymentCancelledError(f"deployment {deployment.deployment_id} cancelled")

    async def _rollback(
        self,
        deployment: Deployment,
        shadow_config: dict[str, Any],
        shadow_records: list[Any],
        stopped: list[str],
        *,
        cause: BaseException,
    ) -> None:
        context = self._context
        registry = context.registry
        _logger.warning("Rolling back deployment %s after %s", deployment.deployment_id, type(cause).__name__)
        try:
            context.config_store.restore(shadow_config)
            await registry.restore(shadow_records)
        except Exception as exc:
            raise RollbackError(
                f"could not restore configuration after deployment {deployment.deployment_id}: {exc}",
                deployment_id=deployment.deployment_id,
            ) from exc

        restart = registry.start_order(name for name in stopped if name in registry)
        for name in restart:
            await registry.lifecycle(name).reset()
        for name in restart:
            registry.lifecycle(name).request_start()
        if restart:
            await registry.wait_for(
                lambda: all(registry.is_settled(name) for name in restart), context.config.settle_timeout
            )
            _logger.info("Restarted %s from the restored configuration", restart)

    async def _persist(self, deployment: Deployment) -> None:
        state_dir = self._context.config.state_dir
        if not state_dir:
            return
        registry = self._context.registry
        roots = [record.name for record in registry.records() if record.is_root]
        path = Path(state_dir) / APPLIED_STATE_FILE
        try:
            await asyncio.to_thread(
                self._context.config_store.persist,
                path,
                extra={"lastDeploymentId": deployment.deployment_id, "rootComponents": roots},
            )
        except (OSError, FleetError):
            _logger.warning("Could not persist applied state to %s", path, exc_info=True)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _publish(self, deployment: Deployment, phase: DeploymentPhase, *, fatal: bool = False) -> None:
        self._context.deployment_events.publish(
            DeploymentEvent(
                phase=phase,
                deployment_id=deployment.deployment_id,
                deployment_type=deployment.deployment_type,
                status=deployment.status,
                status_details=dict(deployment.status_details),
                fatal=fatal,
            )
        )

    def _completed(self, deployment: Deployment, *, fatal: bool = False) -> None:
        self.history.append(deployment.record())
        _logger.info(
            "Deployment %s finished with %s %s",
            deployment.deployment_id,
            deployment.status,
            deployment.status_details or "",
        )
        self._publish(deployment, DeploymentPhase.COMPLETED, fatal=fatal)
