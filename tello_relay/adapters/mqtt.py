"""MQTT adapter encapsulating paho-mqtt client usage.

The broker is used as a pair of durable queues: every session is persistent
(``clean_session=False``) and every publish and subscription uses QoS 1, so the
broker stores messages for a subscribed consumer while it is offline and
delivers them at least once.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

import paho.mqtt.client as mqtt

from ..config import BrokerConfig
from ..core.protocols import DisconnectHandler, MessageHandler

LOGGER = logging.getLogger(__name__)

DURABLE_QOS = 1


class MQTTConnectionError(RuntimeError):
    """Raised when the MQTT client fails to establish a connection."""


def _reason_value(reason_code) -> int:
    return int(getattr(reason_code, "value", reason_code))


class MQTTClient:
    """Async-friendly wrapper over the threaded paho-mqtt client.

    paho runs its network loop in a background thread; every callback is
    marshalled onto the asyncio loop that called :meth:`connect`, so handlers
    registered here never run concurrently with the rest of the application.
    """

    def __init__(
        self,
        config: BrokerConfig,
        *,
        client_id: str,
    ) -> None:
        self.config = config
        self.client_id = client_id
        self.keepalive = config.keepalive

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected_event: Optional[asyncio.Event] = None
        self._disconnect_event: Optional[asyncio.Event] = None
        self._message_handler: Optional[MessageHandler] = None
        self._last_connect_rc: Optional[int] = None
        self._connected: bool = False
        self._disconnect_handlers: List[DisconnectHandler] = []

    async def connect(self, timeout: float = 30.0) -> None:
        """Connect to the MQTT broker and wait for acknowledgement."""

        self._loop = asyncio.get_running_loop()
        self._connected_event = asyncio.Event()
        self._disconnect_event = asyncio.Event()
        self._last_connect_rc = None

        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            clean_session=False,
        )
        client.enable_logger(logging.getLogger("paho.mqtt.client"))

        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

        self._client = client

        LOGGER.info(
            "Connecting to MQTT broker %s:%s as %s",
            self.config.host,
            self.config.port,
            self.client_id,
        )

        client.connect_async(self.config.host, self.config.port, self.keepalive)
        client.loop_start()

        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
            if self._last_connect_rc is None or self._last_connect_rc != 0:
                raise MQTTConnectionError(
                    f"MQTT broker rejected connection (rc={self._last_connect_rc})"
                )
        except asyncio.TimeoutError as exc:
            self.teardown()
            raise MQTTConnectionError("Timed out connecting to MQTT broker") from exc
        except MQTTConnectionError:
            self.teardown()
            raise

    async def disconnect(self, timeout: float = 5.0) -> None:
        """Gracefully disconnect from the broker."""

        if not self._client:
            return

        if not self._connected or self._disconnect_event is None:
            self.teardown()
            return

        self._connected = False
        self._client.disconnect()

        try:
            await asyncio.wait_for(self._disconnect_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Timed out waiting for MQTT disconnect acknowledgement")
        finally:
            self.teardown()

    def teardown(self) -> None:
        """Close the socket, stop the network thread and forget the client.

        ``disconnect`` also stops paho from reconnecting on its own before the
        thread is joined.
        """

        client = self._client
        self._client = None
        self._connected = False
        if client is not None:
            client.disconnect()
            client.loop_stop()

    def publish(
        self, topic: str, payload: bytes, qos: int = DURABLE_QOS, retain: bool = False
    ) -> bool:
        """Queue a message for sending; False when the client refused it."""

        if not self._client:
            return False

        info = self._client.publish(topic, payload, qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            LOGGER.warning("Publish to %s rejected (rc=%s)", topic, info.rc)
            return False
        return True

    def subscribe(self, topic: str, qos: int = DURABLE_QOS) -> None:
        if not self._client:
            raise RuntimeError("MQTT client not connected")
        result, _ = self._client.subscribe(topic, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Subscribe failed with rc={result}")

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    def register_disconnect_handler(self, handler: DisconnectHandler) -> None:
        self._disconnect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # Internal callbacks bridging the threaded paho callbacks into asyncio
    # ------------------------------------------------------------------
    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        rc = _reason_value(reason_code)
        loop = self._loop
        if loop is None or client is not self._client:
            return
        loop.call_soon_threadsafe(self._handle_connect, rc)

    def _on_disconnect(
        self, client, userdata, disconnect_flags, reason_code=0, properties=None
    ) -> None:
        rc = _reason_value(reason_code)
        loop = self._loop
        if loop is None or client is not self._client:
            return
        loop.call_soon_threadsafe(self._handle_disconnect, rc)

    def _on_message(self, client, userdata, message: mqtt.MQTTMessage) -> None:
        loop = self._loop
        if loop is None:
            return
        loop.call_soon_threadsafe(
            self._dispatch_message, message.topic, bytes(message.payload)
        )

    def _handle_connect(self, rc: int) -> None:
        self._last_connect_rc = rc
        if rc == 0:
            LOGGER.info("Connected to MQTT broker")
            self._connected = True
        else:
            LOGGER.error("MQTT connection failed with rc=%s", rc)
            self._connected = False
        if self._connected_event:
            self._connected_event.set()

    def _handle_disconnect(self, rc: int) -> None:
        LOGGER.info("Disconnected from MQTT broker (rc=%s)", rc)
        was_connected = self._connected
        self._connected = False
        if self._disconnect_event:
            self._disconnect_event.set()
        if not was_connected:
            return
        for handler in self._disconnect_handlers:
            handler(rc)

    def _dispatch_message(self, topic: str, payload: bytes) -> None:
        handler = self._message_handler
        if not handler:
            return

        try:
            result = handler(topic, payload)
            if asyncio.iscoroutine(result):
                asyncio.ensure_future(result)
        except Exception:  # pragma: no cover
            LOGGER.exception("MQTT message handler raised an exception")
