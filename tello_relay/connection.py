"""Broker connection lifecycle and reconnection management.

The lifecycle is an explicit state machine. :func:`transition` is a pure
function from the current snapshot and an event to the next state and the side
effects to perform; :class:`BrokerConnection` owns the state and carries the
effects out against a :class:`~tello_relay.core.protocols.BrokerClient`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from .adapters.mqtt import DURABLE_QOS, MQTTConnectionError
from .config import ResilienceConfig
from .core.protocols import BrokerClient
from .core.utils import wait_until
from .outbound import OutboundMessage, OutboundQueue

LOGGER = logging.getLogger(__name__)

ConsumerCallback = Callable[[bytes], Awaitable[None] | None]


class BrokerFatalError(RuntimeError):
    """Raised (and reported) when reconnect attempts are exhausted."""


class ConnectionState(str, Enum):
    """Current state of the broker connection."""

    DISCONNECTED = "disconnected"
    """No session; either idle, waiting to retry, or shut down."""

    CONNECTING = "connecting"
    """A connection attempt is in progress."""

    CONNECTED = "connected"
    """Session established, queues declared, outbound queue drained."""


class ConnectionEvent(str, Enum):
    START = "start"
    OPENED = "opened"
    OPEN_FAILED = "open_failed"
    LOST = "lost"
    RETRY = "retry"
    SHUTDOWN = "shutdown"


class Effect(str, Enum):
    OPEN = "open"
    TEARDOWN = "teardown"
    DECLARE_QUEUES = "declare_queues"
    DRAIN_OUTBOUND = "drain_outbound"
    SCHEDULE_RECONNECT = "schedule_reconnect"
    REPORT_FATAL = "report_fatal"


@dataclass(slots=True, frozen=True)
class ConnectionSnapshot:
    state: ConnectionState
    attempt: int
    max_attempts: int
    max_delay: float
    stopping: bool = False


@dataclass(slots=True, frozen=True)
class Transition:
    state: ConnectionState
    attempt: int
    effects: Tuple[Effect, ...] = ()
    delay: Optional[float] = None


def backoff_delay(attempt: int, max_delay: float) -> float:
    """Seconds to wait before reconnect attempt ``attempt`` (0-indexed)."""

    return float(min(max_delay, 2**attempt))


def transition(snapshot: ConnectionSnapshot, event: ConnectionEvent) -> Transition:
    """Compute the next state and side effects for ``event``.

    Events that make no sense in the current state leave it untouched and
    produce no effects.
    """

    state = snapshot.state
    unchanged = Transition(state, snapshot.attempt)

    if event == ConnectionEvent.SHUTDOWN:
        return Transition(
            ConnectionState.DISCONNECTED, snapshot.attempt, (Effect.TEARDOWN,)
        )

    if event in (ConnectionEvent.START, ConnectionEvent.RETRY):
        if snapshot.stopping or state != ConnectionState.DISCONNECTED:
            return unchanged
        return Transition(ConnectionState.CONNECTING, snapshot.attempt, (Effect.OPEN,))

    if event == ConnectionEvent.OPENED:
        if state != ConnectionState.CONNECTING:
            return unchanged
        return Transition(
            ConnectionState.CONNECTED,
            0,
            (Effect.DECLARE_QUEUES, Effect.DRAIN_OUTBOUND),
        )

    if event == ConnectionEvent.OPEN_FAILED and state != ConnectionState.CONNECTING:
        return unchanged
    if event == ConnectionEvent.LOST and state != ConnectionState.CONNECTED:
        return unchanged

    if snapshot.stopping:
        return Transition(
            ConnectionState.DISCONNECTED, snapshot.attempt, (Effect.TEARDOWN,)
        )

    if snapshot.attempt >= snapshot.max_attempts:
        return Transition(
            ConnectionState.DISCONNECTED,
            snapshot.attempt,
            (Effect.TEARDOWN, Effect.REPORT_FATAL),
        )

    return Transition(
        ConnectionState.DISCONNECTED,
        snapshot.attempt + 1,
        (Effect.TEARDOWN, Effect.SCHEDULE_RECONNECT),
        delay=backoff_delay(snapshot.attempt, snapshot.max_delay),
    )


class BrokerConnection:
    """Single logical connection to the broker with automatic recovery.

    Responsibilities:
    - Drive the connect/reconnect state machine with exponential backoff
    - Declare the durable queues on every successful connect
    - Route inbound messages to the consumer registered for their queue
    - Buffer publishes while disconnected and drain them in order on connect
    - Report a fatal error once the reconnect budget is spent
    """

    def __init__(
        self,
        client: BrokerClient,
        *,
        queues: Iterable[str],
        resilience: ResilienceConfig,
        connect_timeout: float = 10.0,
    ) -> None:
        self._client = client
        self._queues = tuple(queues)
        self._resilience = resilience
        self._connect_timeout = connect_timeout

        self._state = ConnectionState.DISCONNECTED
        self._attempt = 0
        self._stopping = False
        self._fatal_error: Optional[BrokerFatalError] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._consumers: Dict[str, ConsumerCallback] = {}
        self._outbound = OutboundQueue(self.publish, lambda: self.is_connected)

        # Callbacks
        self._fatal_callbacks: List[Callable[[BrokerFatalError], None]] = []
        self._state_callbacks: List[Callable[[ConnectionState], None]] = []

        client.set_message_handler(self._on_message)
        client.register_disconnect_handler(self._on_client_disconnect)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def fatal_error(self) -> Optional[BrokerFatalError]:
        return self._fatal_error

    @property
    def outbound(self) -> OutboundQueue:
        return self._outbound

    def register_fatal_callback(
        self, callback: Callable[[BrokerFatalError], None]
    ) -> None:
        """Register callback invoked once the reconnect budget is exhausted."""
        self._fatal_callbacks.append(callback)

    def register_state_callback(
        self, callback: Callable[[ConnectionState], None]
    ) -> None:
        """Register callback invoked on every state change."""
        self._state_callbacks.append(callback)

    def start(self) -> None:
        """Begin connecting; progress is observable through :attr:`state`."""

        self._stopping = False
        self._dispatch(ConnectionEvent.START)

    async def wait_until_connected(self, timeout: float) -> bool:
        await wait_until(
            lambda: self.is_connected or self._fatal_error is not None, timeout
        )
        return self.is_connected

    def declare_queues(self) -> None:
        """Subscribe every consumed queue on the persistent session.

        Safe to repeat; the broker keeps one subscription per queue.
        """

        for queue in self._queues:
            if queue in self._consumers:
                self._client.subscribe(queue, qos=DURABLE_QOS)
        LOGGER.debug("Declared queues %s", ", ".join(self._queues))

    def consume(self, queue: str, on_message: ConsumerCallback) -> None:
        if queue not in self._queues:
            raise ValueError(f"Unknown queue: {queue}")
        self._consumers[queue] = on_message
        if self.is_connected:
            self._client.subscribe(queue, qos=DURABLE_QOS)

    def publish(self, queue: str, payload: bytes) -> bool:
        """Hand ``payload`` to the broker client; False when not accepted."""

        if not self.is_connected:
            return False
        return self._client.publish(queue, payload, qos=DURABLE_QOS)

    def publish_or_enqueue(self, queue: str, payload: bytes) -> bool:
        return self._outbound.publish_or_enqueue(OutboundMessage(queue, payload))

    async def close(self) -> None:
        """Shut down without triggering reconnects."""

        self._stopping = True

        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if self._state == ConnectionState.CONNECTED:
            try:
                await self._client.disconnect(
                    timeout=self._resilience.shutdown_grace_seconds
                )
            except MQTTConnectionError as exc:
                LOGGER.warning("Broker disconnect failed: %s", exc)

        self._dispatch(ConnectionEvent.SHUTDOWN)
        # One more loop pass so queued close callbacks run before the loop stops.
        await asyncio.sleep(0)

    # ------------------------------------------------------------------
    # State machine plumbing
    # ------------------------------------------------------------------
    def _snapshot(self) -> ConnectionSnapshot:
        return ConnectionSnapshot(
            state=self._state,
            attempt=self._attempt,
            max_attempts=self._resilience.max_reconnect_attempts,
            max_delay=self._resilience.reconnect_delay_max,
            stopping=self._stopping,
        )

    def _dispatch(self, event: ConnectionEvent) -> None:
        result = transition(self._snapshot(), event)
        previous = self._state
        self._state = result.state
        self._attempt = result.attempt

        if previous != result.state:
            LOGGER.info(
                "Broker connection %s -> %s (%s)",
                previous.value,
                result.state.value,
                event.value,
            )
            for callback in self._state_callbacks:
                callback(result.state)

        for effect in result.effects:
            self._apply(effect, result)

    def _apply(self, effect: Effect, result: Transition) -> None:
        if effect == Effect.OPEN:
            self._task = asyncio.ensure_future(self._open())
        elif effect == Effect.TEARDOWN:
            self._client.teardown()
        elif effect == Effect.DECLARE_QUEUES:
            try:
                self.declare_queues()
            except MQTTConnectionError as exc:
                LOGGER.warning("Queue declaration failed: %s", exc)
                asyncio.get_running_loop().call_soon(
                    self._dispatch, ConnectionEvent.LOST
                )
        elif effect == Effect.DRAIN_OUTBOUND:
            self._outbound.drain()
        elif effect == Effect.SCHEDULE_RECONNECT:
            assert result.delay is not None
            LOGGER.warning(
                "Reconnecting to broker in %.1fs (attempt %d of %d)",
                result.delay,
                result.attempt,
                self._resilience.max_reconnect_attempts,
            )
            self._task = asyncio.ensure_future(self._reconnect_after(result.delay))
        elif effect == Effect.REPORT_FATAL:
            error = BrokerFatalError(
                f"Broker unreachable after {self._attempt} reconnect attempt(s)"
            )
            self._fatal_error = error
            LOGGER.error("%s", error)
            for callback in self._fatal_callbacks:
                callback(error)

    async def _open(self) -> None:
        try:
            await self._client.connect(timeout=self._connect_timeout)
        except (MQTTConnectionError, OSError) as exc:
            LOGGER.warning("Broker connection attempt failed: %s", exc)
            self._dispatch(ConnectionEvent.OPEN_FAILED)
        else:
            self._dispatch(ConnectionEvent.OPENED)

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._dispatch(ConnectionEvent.RETRY)

    def _on_client_disconnect(self, rc: int) -> None:
        if self._stopping:
            return
        LOGGER.warning("Broker connection lost (rc=%s)", rc)
        self._dispatch(ConnectionEvent.LOST)

    def _on_message(self, topic: str, payload: bytes) -> Awaitable[None] | None:
        consumer = self._consumers.get(topic)
        if consumer is None:
            LOGGER.debug("Dropping message on unconsumed queue %s", topic)
            return None
        return consumer(payload)
