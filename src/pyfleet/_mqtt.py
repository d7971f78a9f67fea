"""Internal MQTT publish/subscribe runtime."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from typing import Any, Protocol, cast

import paho.mqtt.client as mqtt

from pyfleet.config import FleetConfig
from pyfleet.exceptions import FleetTransportError

MessageHandler = Callable[[str, bytes], None]
"""Called on the asyncio loop with ``(topic, payload)``."""


class PubSub(Protocol):
    """Structural publish/subscribe interface used by the job channel and reporter.

    Having a protocol here makes it easy to pass test doubles while
    keeping the production implementation (:class:`MqttRuntime`) concrete.
    """

    def subscribe(self, topic: str, handler: MessageHandler) -> None: ...

    def unsubscribe(self, topic: str) -> None: ...

    async def publish(self, topic: str, payload: bytes, *, qos: int = 1) -> None: ...


class MqttRuntime:
    """Threaded paho-mqtt runtime that delivers messages onto an asyncio loop.

    Subscriptions are remembered and re-issued on every (re)connect.
    Handlers always run on *loop*, never on the paho network thread.
    """

    def __init__(
        self,
        config: FleetConfig,
        *,
        loop: asyncio.AbstractEventLoop,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._loop = loop
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._running = False
        self._handlers: dict[str, MessageHandler] = {}
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        """Whether the MQTT runtime is actively running."""
        return self._running

    def start(self) -> None:
        """Connect and start the network loop.  Blocks while connecting."""
        self.stop()
        config = self._config
        self._logger.debug(
            "MQTT runtime start requested host=%s port=%s client_id=%s",
            config.broker_host,
            config.broker_port,
            config.mqtt_client_id,
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=config.mqtt_client_id,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(self._logger)
        if config.mqtt_tls:
            client.tls_set(ca_certs=config.ca_path, certfile=config.cert_path, keyfile=config.key_path)

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                return
            self._logger.debug("MQTT connected successfully reason=%s", reason_code)
            with self._lock:
                topics = list(self._handlers)
            for topic in topics:
                self._logger.debug("MQTT subscribing topic=%s", topic)
                c.subscribe(topic, qos=1)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            self._logger.debug("Received PUBLISH topic=%s bytes=%d", msg.topic, len(msg.payload))
            with self._lock:
                handlers = [h for pattern, h in self._handlers.items() if mqtt.topic_matches_sub(pattern, msg.topic)]
            for handler in handlers:
                self._loop.call_soon_threadsafe(handler, msg.topic, bytes(msg.payload))

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if self._running:
                self._logger.debug("MQTT disconnected: %s", reason_code)

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        try:
            client.connect(config.broker_host, config.broker_port, keepalive=config.mqtt_keepalive)
        except OSError as exc:
            raise FleetTransportError(
                f"MQTT connect to {config.broker_host}:{config.broker_port} failed: {exc}",
                endpoint=config.broker_host,
            ) from exc
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def stop(self) -> None:
        """Stop and disconnect current MQTT client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")

    def subscribe(self, topic: str, handler: MessageHandler) -> None:
        with self._lock:
            self._handlers[topic] = handler
        client = self._client
        if client is not None and client.is_connected():
            client.subscribe(topic, qos=1)

    def unsubscribe(self, topic: str) -> None:
        with self._lock:
            self._handlers.pop(topic, None)
        client = self._client
        if client is not None and client.is_connected():
            client.unsubscribe(topic)

    async def publish(self, topic: str, payload: bytes, *, qos: int = 1) -> None:
        """Hand *payload* to the network loop.

        Raises
        ------
        FleetTransportError
            If the client is not running or paho refuses the message.
        """
        client = self._client
        if client is None:
            raise FleetTransportError("MQTT runtime is not running", endpoint=topic)
        info = client.publish(topic, payload, qos=qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise FleetTransportError(f"MQTT publish to {topic} failed: {mqtt.error_string(info.rc)}", endpoint=topic)
        self._logger.debug("MQTT PUBLISH topic=%s mid=%s bytes=%d", topic, info.mid, len(payload))
