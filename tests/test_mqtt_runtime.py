from __future__ import annotations

import asyncio

import pytest

from pyfleet._mqtt import MqttRuntime
from pyfleet.config import FleetConfig
from pyfleet.exceptions import FleetTransportError


def _runtime() -> MqttRuntime:
    return MqttRuntime(FleetConfig(thing_name="device-1"), loop=asyncio.new_event_loop())


def test_subscriptions_are_remembered_before_connect() -> None:
    runtime = _runtime()

    def handler(topic: str, payload: bytes) -> None:
        pass

    runtime.subscribe("$aws/things/device-1/jobs/notify-next", handler)
    runtime.subscribe("$aws/things/device-1/jobs/+/update/accepted", handler)
    runtime.unsubscribe("$aws/things/device-1/jobs/notify-next")

    assert list(runtime._handlers) == ["$aws/things/device-1/jobs/+/update/accepted"]  # type: ignore[attr-defined]
    assert not runtime.is_running
    runtime._loop.close()  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_publish_without_connection_is_transport_error() -> None:
    runtime = MqttRuntime(FleetConfig(thing_name="device-1"), loop=asyncio.get_running_loop())
    with pytest.raises(FleetTransportError) as excinfo:
        await runtime.publish("$aws/things/device-1/fleet/health/json", b"{}")
    assert excinfo.value.endpoint == "$aws/things/device-1/fleet/health/json"


def test_stop_before_start_is_a_no_op() -> None:
    runtime = _runtime()
    runtime.stop()
    assert not runtime.is_running
    runtime._loop.close()  # type: ignore[attr-defined]
