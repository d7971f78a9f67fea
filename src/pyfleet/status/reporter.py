"""Fleet status reporter.

Keeps an index of every registered component, fed by the component
event bus, and publishes a complete inventory snapshot when:

* a component reaches ``RUNNING``, ``FINISHED`` or ``BROKEN``
* a deployment completes
* the periodic timer fires

Triggers arriving within ``status_debounce`` seconds of the first one
are coalesced into a single publish built from the state observed when
the window closes.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from pyfleet._constants import FLEET_STATUS_TOPIC, STATUS_PUBLISHED_EVENT, STATUS_PUBLISHED_MESSAGE
from pyfleet._retry import retry_transient
from pyfleet.exceptions import FleetTransportError
from pyfleet.models.component import ComponentRecord
from pyfleet.models.deployment import DeploymentStatus
from pyfleet.models.status import ComponentStatusDetails, FleetStatusDetails, OverallStatus
from pyfleet.state.events import ComponentChange, ComponentStateChanged, DeploymentEvent, DeploymentPhase

if TYPE_CHECKING:
    from pyfleet._mqtt import PubSub
    from pyfleet.context import FleetContext
    from pyfleet.state.bus import Subscription

_logger = logging.getLogger(__name__)


class FleetStatusReporter:
    """Builds and publishes :class:`FleetStatusDetails` snapshots."""

    def __init__(
        self,
        context: FleetContext,
        pubsub: PubSub,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._context = context
        self._config = context.config
        self._pubsub = pubsub
        self._clock = clock
        self._sleep = sleep
        self._topic = FLEET_STATUS_TOPIC.format(thing=self._config.thing_name)
        self._index: dict[str, ComponentRecord] = {}
        self._sequence = 0
        self._requires_intervention = False
        self._publish_lock = asyncio.Lock()
        self._pending: asyncio.Task[None] | None = None
        self._periodic: asyncio.Task[None] | None = None
        self._subscriptions: list[Subscription[Any]] = []
        self.last_published: FleetStatusDetails | None = None

    @property
    def requires_intervention(self) -> bool:
        return self._requires_intervention

    @property
    def sequence_number(self) -> int:
        return self._sequence

    def start(self) -> None:
        if self._subscriptions:
            return
        self._index = {record.name: record for record in self._context.registry.records()}
        self._subscriptions = [
            self._context.component_events.subscribe(self._on_component_event),
            self._context.deployment_events.subscribe(self._on_deployment_event),
        ]
        if self._config.status_interval > 0:
            self._periodic = asyncio.get_running_loop().create_task(self._periodic_loop(), name="status-periodic")

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        for task in (self._pending, self._periodic):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._pending = None
        self._periodic = None

    async def flush(self) -> None:
        """Wait for a pending debounced publish, if any."""
        task = self._pending
        if task is not None:
            await asyncio.wait({task})

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def _on_component_event(self, event: ComponentStateChanged) -> None:
        if event.change == ComponentChange.REMOVED:
            self._index.pop(event.name, None)
            return
        self._index[event.name] = event.component
        if event.change == ComponentChange.STATE and event.new_state is not None and event.new_state.is_terminal:
            self.trigger()

    def _on_deployment_event(self, event: DeploymentEvent) -> None:
        if event.phase != DeploymentPhase.COMPLETED:
            return
        if event.fatal:
            self._requires_intervention = True
        elif event.status == DeploymentStatus.SUCCEEDED:
            self._requires_intervention = False
        self.trigger()

    def trigger(self) -> None:
        """Schedule a publish, coalescing with one already pending."""
        if self._pending is not None and not self._pending.done():
            return
        self._pending = asyncio.get_running_loop().create_task(self._debounced_publish(), name="status-debounce")

    async def _debounced_publish(self) -> None:
        await self._sleep(self._config.status_debounce)
        # Triggers from here on start a new window.
        self._pending = None
        await self.publish_now()

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.status_interval)
            self.trigger()

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def build_snapshot(self) -> FleetStatusDetails:
        """Point-in-time snapshot of the full inventory."""
        records = [self._index[name] for name in sorted(self._index)]
        unhealthy = any(record.state.is_unhealthy for record in records)
        overall = OverallStatus.UNHEALTHY if unhealthy or self._requires_intervention else OverallStatus.HEALTHY
        self._sequence += 1
        return FleetStatusDetails(
            thing=self._config.thing_name,
            timestamp=int(self._clock() * 1000),
            sequence_number=self._sequence,
            overall_status=overall,
            components=[ComponentStatusDetails.from_record(record) for record in records],
            requires_intervention=self._requires_intervention,
        )

    async def publish_now(self) -> FleetStatusDetails | None:
        """Build and publish a snapshot immediately.

        Returns the published snapshot, or ``None`` if every publish
        attempt failed.
        """
        async with self._publish_lock:
            snapshot = self.build_snapshot()
            payload = snapshot.to_json().encode("utf-8")
            try:
                await retry_transient(
                    lambda: self._pubsub.publish(self._topic, payload, qos=1),
                    self._config.transient_retry,
                    what=f"Status publish #{snapshot.sequence_number}",
                    sleep=self._sleep,
                )
            except FleetTransportError:
                _logger.error("Status snapshot #%d could not be published", snapshot.sequence_number)
                return None
            self.last_published = snapshot
            _logger.info(
                STATUS_PUBLISHED_MESSAGE,
                extra={
                    "event_type": STATUS_PUBLISHED_EVENT,
                    "thing": snapshot.thing,
                    "sequence_number": snapshot.sequence_number,
                    "overall_status": snapshot.overall_status.value,
                    "component_count": len(snapshot.components),
                },
            )
            return snapshot
