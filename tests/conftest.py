import asyncio
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from tello_relay.adapters.mqtt import MQTTConnectionError
from tello_relay.config import FlightConfig, ResilienceConfig


class FakeBrokerClient:
    """In-memory stand-in for MQTTClient used by connection and flight tests."""

    def __init__(self) -> None:
        self.connect_results: List[bool] = []
        self.accept_publish: Callable[[str, bytes], bool] = lambda topic, payload: True
        self.responder: Optional[Callable[[str, bytes], Optional[Tuple[str, bytes]]]] = None

        self.connect_call_count = 0
        self.disconnect_call_count = 0
        self.teardown_call_count = 0
        self.subscriptions: List[Tuple[str, int]] = []
        self.published: List[Tuple[str, bytes]] = []
        self.connected = False

        self._handler = None
        self._disconnect_handlers: list = []

    async def connect(self, timeout: float = 30.0) -> None:
        self.connect_call_count += 1
        succeed = self.connect_results.pop(0) if self.connect_results else True
        if not succeed:
            raise MQTTConnectionError("Simulated connection failure")
        self.connected = True

    async def disconnect(self, timeout: float = 5.0) -> None:
        self.disconnect_call_count += 1
        self.connected = False

    def teardown(self) -> None:
        self.teardown_call_count += 1
        self.connected = False

    def publish(self, topic: str, payload: bytes, qos: int = 1, retain: bool = False) -> bool:
        if not self.connected or not self.accept_publish(topic, payload):
            return False
        self.published.append((topic, payload))
        if self.responder is not None:
            response = self.responder(topic, payload)
            if response is not None:
                asyncio.get_running_loop().call_soon(self.deliver, *response)
        return True

    def subscribe(self, topic: str, qos: int = 1) -> None:
        self.subscriptions.append((topic, qos))

    def set_message_handler(self, handler) -> None:
        self._handler = handler

    def register_disconnect_handler(self, handler) -> None:
        self._disconnect_handlers.append(handler)

    # Test helpers -----------------------------------------------------
    def deliver(self, topic: str, payload: bytes) -> None:
        assert self._handler is not None
        result = self._handler(topic, payload)
        if asyncio.iscoroutine(result):
            asyncio.ensure_future(result)

    def drop(self, rc: int = 7) -> None:
        self.connected = False
        for handler in self._disconnect_handlers:
            handler(rc)

    def published_to(self, topic: str) -> List[str]:
        return [payload.decode() for queue, payload in self.published if queue == topic]


class ScriptedVehicle:
    """Answers commands published on ``commands`` with scripted replies.

    ``replies`` maps a command text to the replies for successive sends; a
    ``None`` entry means no reply (timeout). Unscripted commands answer ``ok``.
    """

    def __init__(self, replies: Optional[Dict[str, list]] = None) -> None:
        self.replies: Dict[str, list] = {key: list(value) for key, value in (replies or {}).items()}
        self.defaults: Dict[str, str] = {"battery?": "87", "height?": "80"}

    def __call__(self, topic: str, payload: bytes) -> Optional[Tuple[str, bytes]]:
        if topic != "commands":
            return None
        text = payload.decode()
        script = self.replies.get(text)
        if script:
            reply = script.pop(0)
        else:
            reply = self.defaults.get(text, "ok")
        if reply is None:
            return None
        return "responses", reply.encode()


@pytest.fixture
def broker_client() -> FakeBrokerClient:
    return FakeBrokerClient()


@pytest.fixture
def scripted_vehicle() -> Callable[..., ScriptedVehicle]:
    return ScriptedVehicle


@pytest.fixture
def fast_resilience() -> ResilienceConfig:
    return ResilienceConfig(
        max_reconnect_attempts=3,
        reconnect_delay_max=0.01,
        shutdown_grace_seconds=0.05,
    )


@pytest.fixture
def fast_flight() -> Callable[..., FlightConfig]:
    def _create(**overrides) -> FlightConfig:
        values = dict(
            default_timeout=0.2,
            takeoff_timeout=0.2,
            landing_timeout=0.2,
            connect_timeout=1.0,
            command_interval=0.0,
            retry_delay=0.0,
            stabilization_delay=0.0,
            sequence=["forward 20", "cw 90"],
        )
        values.update(overrides)
        return FlightConfig(**values)

    return _create
