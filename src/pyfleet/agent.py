"""High-level fleet agent."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from pathlib import Path
from typing import Any

import aiohttp

from pyfleet import __version__
from pyfleet._constants import APPLIED_STATE_FILE, DEPLOYMENT_SERVICE, STATUS_SERVICE
from pyfleet._mqtt import MqttRuntime, PubSub
from pyfleet._transport import DocumentFetcher, HttpDocumentFetcher
from pyfleet.artifacts import ArtifactStore, LocalArtifactStore
from pyfleet.config import FleetConfig
from pyfleet.config_store import ConfigStore
from pyfleet.context import FleetContext
from pyfleet.deployment.processor import DeploymentProcessor
from pyfleet.exceptions import FleetError, RollbackError
from pyfleet.jobs.channel import CloudJobChannel
from pyfleet.lifecycle.hooks import Hook, ProcessSupervisor, SubprocessSupervisor
from pyfleet.models.component import ComponentKind, ComponentRecord, ComponentSpec, LifecycleStep
from pyfleet.models.deployment import Deployment, DeploymentStatus, DeploymentType, DesiredState
from pyfleet.status.reporter import FleetStatusReporter

_logger = logging.getLogger(__name__)

_SERVICES = (STATUS_SERVICE, DEPLOYMENT_SERVICE)


class FleetAgent:
    """Device-side fleet agent.

    Usage::

        async with FleetAgent(FleetConfig.from_env()) as agent:
            deployment = agent.deploy_local({"components": {...}})
            await agent.wait(deployment)
    """

    def __init__(
        self,
        config: FleetConfig,
        *,
        context: FleetContext | None = None,
        pubsub: PubSub | None = None,
        fetcher: DocumentFetcher | None = None,
        http_session: aiohttp.ClientSession | None = None,
        supervisor: ProcessSupervisor | None = None,
        artifact_store: ArtifactStore | None = None,
    ) -> None:
        self._config = config
        if context is None:
            if artifact_store is None and config.artifact_root:
                artifact_store = LocalArtifactStore(config.artifact_root)
            context = FleetContext(
                config,
                supervisor=supervisor or SubprocessSupervisor(),
                artifact_store=artifact_store,
            )
        self.context = context
        self.processor = DeploymentProcessor(context)
        self._pubsub = pubsub
        self._fetcher = fetcher
        self._external_session = http_session is not None
        self._http_session = http_session
        self._mqtt_runtime: MqttRuntime | None = None
        self._channel: CloudJobChannel | None = None
        self._reporter: FleetStatusReporter | None = None
        self._started = False

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> FleetAgent:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    @property
    def is_running(self) -> bool:
        return self._started

    @property
    def reporter(self) -> FleetStatusReporter | None:
        return self._reporter

    @property
    def channel(self) -> CloudJobChannel | None:
        return self._channel

    @property
    def fatal_error(self) -> RollbackError | None:
        """Set when a rollback failed; cleared by nothing but a restart."""
        return self.processor.fatal_error

    async def start(self) -> None:
        """Connect the transport and start every subsystem.  Idempotent."""
        if self._started:
            return
        loop = asyncio.get_running_loop()
        if self._pubsub is None:
            runtime = MqttRuntime(self._config, loop=loop)
            await loop.run_in_executor(None, runtime.start)
            self._mqtt_runtime = runtime
            self._pubsub = runtime
        if self._fetcher is None:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            self._fetcher = HttpDocumentFetcher(self._http_session)

        self.context.pubsub = self._pubsub
        reporter = self._reporter = FleetStatusReporter(self.context, self._pubsub)
        await self._start_service(STATUS_SERVICE, startup=reporter.start, shutdown=reporter.stop)
        await self._start_service(DEPLOYMENT_SERVICE, startup=self.processor.start, shutdown=self.processor.stop)
        self._channel = CloudJobChannel(self.context, self._pubsub, self._fetcher)
        self._channel.start()
        self._started = True
        _logger.info("Fleet agent started for %s", self._config.thing_name)

    async def _start_service(
        self, name: str, *, startup: Callable[[], object], shutdown: Callable[[], Awaitable[None]]
    ) -> None:
        """Register one of the agent's own services as a running built-in component."""

        async def _startup() -> None:
            startup()

        self.context.register_builtin(name, {LifecycleStep.STARTUP: _startup, LifecycleStep.SHUTDOWN: shutdown})
        await self.context.registry.upsert(
            name, ComponentSpec(version=__version__, kind=ComponentKind.BUILTIN, is_root=False)
        )
        await self.context.registry.lifecycle(name).request_start()

    async def stop(self) -> None:
        """Stop subsystems and every managed component.  Idempotent."""
        if not self._started:
            return
        self._started = False
        if self._channel is not None:
            await self._channel.stop()
        await self.processor.stop()

        registry = self.context.registry
        for name in reversed(registry.start_order()):
            if name not in _SERVICES:
                await registry.lifecycle(name).stop()
        for name in reversed(_SERVICES):
            if name in registry:
                await registry.lifecycle(name).stop()
        for name in registry.names():
            await registry.lifecycle(name).close()

        if self._reporter is not None:
            await self._reporter.stop()
        if self._mqtt_runtime is not None:
            await asyncio.get_running_loop().run_in_executor(None, self._mqtt_runtime.stop)
            self._mqtt_runtime = None
            self._pubsub = None
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
            self._fetcher = None
        _logger.info("Fleet agent stopped")

    # ------------------------------------------------------------------
    # Deployments
    # ------------------------------------------------------------------

    def deploy_local(self, document: DesiredState | Mapping[str, Any], deployment_id: str | None = None) -> Deployment:
        """Queue a locally supplied desired-state document."""
        if not isinstance(document, DesiredState):
            document = DesiredState.model_validate(dict(document))
        deployment = Deployment.create(document, deployment_type=DeploymentType.LOCAL, deployment_id=deployment_id)
        self.processor.offer(deployment)
        return deployment

    async def resync(self) -> Deployment | None:
        """Re-apply the last persisted applied state as a shadow-sync deployment.

        Components registered now but absent from the persisted state are
        removed.  Returns ``None`` when nothing was persisted.
        """
        state_dir = self._config.state_dir
        if not state_dir:
            return None
        path = Path(state_dir) / APPLIED_STATE_FILE
        data = await asyncio.to_thread(ConfigStore.load, path)
        if data is None:
            _logger.info("No applied state at %s; nothing to resync", path)
            return None
        services = data.get("services")
        if not isinstance(services, dict):
            raise FleetError(f"persisted state at {path} has no services")
        roots = set(data.get("rootComponents") or [])
        components = {
            name: ComponentSpec.model_validate({**config, "isRoot": name in roots})
            for name, config in services.items()
        }
        removals = [name for name in self.context.registry.names() if name not in components and name not in _SERVICES]
        deployment = Deployment.create(
            DesiredState(components=components, removals=removals),
            deployment_type=DeploymentType.SHADOW_SYNC,
        )
        self.processor.offer(deployment)
        _logger.info("Queued resync of %d component(s) from %s", len(components), path)
        return deployment

    async def wait(self, deployment: Deployment, timeout: float | None = None) -> DeploymentStatus:
        """Wait for *deployment* to finish.

        Raises
        ------
        RollbackError
            If the deployment's rollback failed.
        """
        status = await deployment.wait(timeout)
        fatal = self.processor.fatal_error
        if fatal is not None and fatal.deployment_id == deployment.deployment_id:
            raise fatal
        return status

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    def register_builtin(self, name: str, hooks: Mapping[LifecycleStep | str, Hook]) -> None:
        """Register in-process hooks for a ``built-in`` or ``plugin`` component."""
        self.context.register_builtin(name, {LifecycleStep(step): hook for step, hook in hooks.items()})

    def snapshot(self) -> list[ComponentRecord]:
        return self.context.registry.records()
