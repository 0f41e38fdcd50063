"""Tests for the MQTT adapter."""

import asyncio
from types import SimpleNamespace

import pytest
import pytest_asyncio

from tello_relay.adapters import MQTTClient, MQTTConnectionError
from tello_relay.config import BrokerConfig

import paho.mqtt.client as mqtt


class FakeMqttClient:
    """Minimal fake paho-mqtt client for testing."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        events: dict,
        *args,
        rc_connect: int = 0,
        rc_disconnect: int = 0,
        publish_rc: int = mqtt.MQTT_ERR_SUCCESS,
        subscribe_rc: int = mqtt.MQTT_ERR_SUCCESS,
        **kwargs,
    ):
        self._loop = loop
        self._events = events
        self._rc_connect = rc_connect
        self._rc_disconnect = rc_disconnect
        self._publish_rc = publish_rc
        self._subscribe_rc = subscribe_rc
        events["client_args"] = (args, kwargs)

        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None

    # paho interface -------------------------------------------------
    def enable_logger(self, logger):
        self._events.setdefault("logger_enabled", True)

    def username_pw_set(self, username, password=None):
        self._events["auth"] = (username, password)

    def connect_async(self, host, port, keepalive):
        self._events["connect_args"] = (host, port, keepalive)
        if self.on_connect:
            self._loop.call_soon(
                self.on_connect,
                self,
                None,
                None,
                self._rc_connect,
                None,
            )

    def loop_start(self):
        self._events["loop_start"] = self._events.get("loop_start", 0) + 1

    def loop_stop(self):
        self._events["loop_stop"] = self._events.get("loop_stop", 0) + 1
        self._events.setdefault("calls", []).append("loop_stop")

    def disconnect(self):
        self._events["disconnect_called"] = True
        self._events.setdefault("calls", []).append("disconnect")
        if self.on_disconnect:
            self._loop.call_soon(
                self.on_disconnect,
                self,
                None,
                None,
                self._rc_disconnect,
                None,
            )

    def publish(self, topic, payload, qos=0, retain=False, properties=None):
        self._events.setdefault("published", []).append((topic, payload, qos, retain))
        return SimpleNamespace(rc=self._publish_rc)

    def subscribe(self, topic, qos=0):
        self._events.setdefault("subscribed", []).append((topic, qos))
        return self._subscribe_rc, 1


def _config(**overrides) -> BrokerConfig:
    values = dict(host="broker.local", port=1883, username="pilot", password="secret")
    values.update(overrides)
    return BrokerConfig(**values)


def _install_fake(monkeypatch, events: dict, **fake_kwargs) -> None:
    loop = asyncio.get_running_loop()

    def factory(*args, **kwargs):
        return FakeMqttClient(loop, events, *args, **fake_kwargs, **kwargs)

    monkeypatch.setattr("tello_relay.adapters.mqtt.mqtt.Client", factory)


@pytest_asyncio.fixture
async def mqtt_client(monkeypatch):
    events: dict = {}
    _install_fake(monkeypatch, events)

    client = MQTTClient(_config(), client_id="tello-relay-controller")
    await client.connect()

    yield client, events

    await client.disconnect()


@pytest.mark.asyncio
async def test_connect_configures_persistent_session(mqtt_client):
    client, events = mqtt_client

    args, kwargs = events["client_args"]
    assert args == (mqtt.CallbackAPIVersion.VERSION2,)
    assert kwargs == {"client_id": "tello-relay-controller", "clean_session": False}
    assert events["connect_args"] == ("broker.local", 1883, 60)
    assert events["auth"] == ("pilot", "secret")
    assert events["loop_start"] == 1
    assert client.is_connected() is True


@pytest.mark.asyncio
async def test_publish_uses_durable_qos(mqtt_client):
    client, events = mqtt_client

    assert client.publish("commands", b"takeoff") is True

    assert events["published"] == [("commands", b"takeoff", 1, False)]


@pytest.mark.asyncio
async def test_subscribe_records_topics(mqtt_client):
    client, events = mqtt_client

    client.subscribe("responses")

    assert events["subscribed"] == [("responses", 1)]


@pytest.mark.asyncio
async def test_publish_rejected_returns_false(monkeypatch):
    events: dict = {}
    _install_fake(monkeypatch, events, publish_rc=mqtt.MQTT_ERR_QUEUE_SIZE)

    client = MQTTClient(_config(), client_id="tello-relay-relay")
    await client.connect()

    assert client.publish("responses", b"ok") is False

    await client.disconnect()


@pytest.mark.asyncio
async def test_publish_without_client_returns_false():
    client = MQTTClient(_config(), client_id="tello-relay-relay")

    assert client.publish("commands", b"land") is False


@pytest.mark.asyncio
async def test_subscribe_failure_raises(monkeypatch):
    events: dict = {}
    _install_fake(monkeypatch, events, subscribe_rc=mqtt.MQTT_ERR_NO_CONN)

    client = MQTTClient(_config(), client_id="tello-relay-relay")
    await client.connect()

    with pytest.raises(MQTTConnectionError):
        client.subscribe("commands")

    await client.disconnect()


@pytest.mark.asyncio
async def test_message_handler_dispatches_on_loop(monkeypatch):
    events: dict = {}
    _install_fake(monkeypatch, events)

    client = MQTTClient(_config(username=None), client_id="tello-relay-relay")

    message_event = asyncio.Event()

    async def handler(topic: str, payload: bytes) -> None:
        events["handled"] = (topic, payload)
        message_event.set()

    client.set_message_handler(handler)
    await client.connect()

    message = SimpleNamespace(topic="commands", payload=bytearray(b"forward 20"))
    client._on_message(client._client, None, message)  # type: ignore[arg-type]

    await asyncio.wait_for(message_event.wait(), timeout=1.0)
    await client.disconnect()

    assert events["handled"] == ("commands", b"forward 20")
    assert "auth" not in events


@pytest.mark.asyncio
async def test_unexpected_disconnect_notifies_handler(monkeypatch):
    events: dict = {}
    _install_fake(monkeypatch, events)

    client = MQTTClient(_config(), client_id="tello-relay-controller")
    disconnect_event = asyncio.Event()

    def _handler(rc: int) -> None:
        events["disconnect_rc"] = rc
        disconnect_event.set()

    client.register_disconnect_handler(_handler)
    await client.connect()

    client._on_disconnect(client._client, None, None, 7, None)

    await asyncio.wait_for(disconnect_event.wait(), timeout=1.0)
    assert events["disconnect_rc"] == 7
    assert client.is_connected() is False

    client.teardown()
    assert events["loop_stop"] == 1


@pytest.mark.asyncio
async def test_connect_failure_raises_and_stops_loop(monkeypatch):
    events: dict = {}
    _install_fake(monkeypatch, events, rc_connect=5)

    client = MQTTClient(_config(), client_id="tello-relay-controller")

    with pytest.raises(MQTTConnectionError):
        await client.connect()

    assert events["loop_stop"] == 1
    assert client.publish("commands", b"takeoff") is False


@pytest.mark.asyncio
async def test_disconnect_stops_network_loop(mqtt_client):
    client, events = mqtt_client

    await client.disconnect()

    assert events["disconnect_called"] is True
    assert events["loop_stop"] == 1
    assert client.is_connected() is False


@pytest.mark.asyncio
async def test_teardown_closes_socket_before_stopping_loop(monkeypatch):
    events: dict = {}
    _install_fake(monkeypatch, events)

    client = MQTTClient(_config(), client_id="tello-relay-relay")
    await client.connect()

    client.teardown()

    assert events["calls"] == ["disconnect", "loop_stop"]
    assert client.is_connected() is False


@pytest.mark.asyncio
async def test_callbacks_from_torn_down_client_are_ignored(monkeypatch):
    events: dict = {}
    _install_fake(monkeypatch, events)

    client = MQTTClient(_config(), client_id="tello-relay-controller")
    notified = []
    client.register_disconnect_handler(notified.append)
    await client.connect()
    stale = client._client

    client.teardown()
    await client.connect()
    client._on_disconnect(stale, None, None, 7, None)
    await asyncio.sleep(0.05)

    assert notified == []
    assert client.is_connected() is True

    await client.disconnect()
