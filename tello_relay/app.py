"""Process entry-points wiring the broker, the vehicle link and the flight logic."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

from . import constants
from .adapters import DeviceLink, DeviceLinkError, MQTTClient
from .config import RelayConfig, load_config
from .connection import BrokerConnection, BrokerFatalError
from .core.protocols import BrokerClient, DeviceExchange
from .health import HealthReporter, HealthServer
from .orchestrator import FlightOrchestrator
from .relay import CommandRelayWorker

LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


class ProcessRole(str, Enum):
    CONTROLLER = "controller"
    RELAY = "relay"


def build_client_id(config: RelayConfig, role: ProcessRole) -> str:
    """Stable client id per role; persistent sessions are keyed on it."""

    if config.broker.client_id:
        return f"{config.broker.client_id}-{role.value}"
    return f"{constants.APP_NAME}-{role.value}"


class _ProcessApp(ABC):
    """Shared lifecycle: broker connection, signals, health, shutdown."""

    role: ProcessRole

    def __init__(
        self,
        config: Optional[RelayConfig] = None,
        *,
        broker_client: Optional[BrokerClient] = None,
    ) -> None:
        self._config = config or load_config()
        broker = self._config.broker
        self._client = broker_client or MQTTClient(
            broker, client_id=build_client_id(self._config, self.role)
        )
        self._connection = BrokerConnection(
            self._client,
            queues=(broker.commands_queue, broker.responses_queue),
            resilience=self._config.resilience,
            connect_timeout=broker.connect_timeout,
        )
        self._health = HealthReporter(self.role.value)
        self._health_server: Optional[HealthServer] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._fatal_error: Optional[BrokerFatalError] = None

        self._connection.register_state_callback(self._health.on_connection_state)
        self._connection.register_fatal_callback(self._on_fatal)

    @property
    def connection(self) -> BrokerConnection:
        return self._connection

    @classmethod
    def start(cls, config: Optional[RelayConfig] = None) -> int:
        instance = cls(config)
        try:
            return asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("%s received shutdown signal", instance.role.value)
            return EXIT_FAILURE

    def request_shutdown(self) -> None:
        LOGGER.info("Shutdown requested")
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def run(self) -> int:
        self._shutdown_event = asyncio.Event()
        self._install_signal_handlers()
        LOGGER.info(
            "%s %s starting with config: %s",
            constants.APP_NAME,
            self.role.value,
            self._config.path,
        )
        await self._start_health_server()
        try:
            return await self._run()
        finally:
            await self._stop_services()

    @abstractmethod
    async def _run(self) -> int:
        """Run the role until it finishes; returns the process exit code."""

    def _on_fatal(self, error: BrokerFatalError) -> None:
        self._fatal_error = error

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, self.request_shutdown)

    async def _start_health_server(self) -> None:
        resilience = self._config.resilience
        if not resilience.health_enabled:
            return
        server = HealthServer(
            self._health, resilience.health_host, resilience.health_port
        )
        try:
            await server.start()
        except OSError as exc:
            LOGGER.warning("Health endpoint unavailable: %s", exc)
            return
        self._health_server = server

    async def _stop_services(self) -> None:
        await self._connection.close()
        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None


class ControllerApp(_ProcessApp):
    """Publisher side: flies the configured sequence once and exits."""

    role = ProcessRole.CONTROLLER

    def __init__(
        self,
        config: Optional[RelayConfig] = None,
        *,
        broker_client: Optional[BrokerClient] = None,
    ) -> None:
        super().__init__(config, broker_client=broker_client)
        broker = self._config.broker
        self._orchestrator = FlightOrchestrator(
            self._connection,
            self._config.flight,
            commands_queue=broker.commands_queue,
            responses_queue=broker.responses_queue,
        )
        self._orchestrator.register_stage_callback(self._health.on_flight_stage)

    @property
    def orchestrator(self) -> FlightOrchestrator:
        return self._orchestrator

    def request_shutdown(self) -> None:
        super().request_shutdown()
        self._orchestrator.request_abort("shutdown requested")

    async def _run(self) -> int:
        self._connection.start()
        result = await self._orchestrator.run()

        if self._fatal_error is not None:
            LOGGER.error("Broker connection failed: %s", self._fatal_error)
            return EXIT_FAILURE
        if not result.success:
            LOGGER.error("Flight ended in %s: %s", result.stage.value, result.reason)
            return EXIT_FAILURE

        LOGGER.info(
            "Flight completed: %d exchange(s), %d retried attempt(s)",
            len(result.history),
            sum(entry.retries for entry in result.history),
        )
        return EXIT_OK


class RelayApp(_ProcessApp):
    """Consumer side: relays commands to the vehicle until shut down."""

    role = ProcessRole.RELAY

    def __init__(
        self,
        config: Optional[RelayConfig] = None,
        *,
        broker_client: Optional[BrokerClient] = None,
        device: Optional[DeviceExchange] = None,
    ) -> None:
        super().__init__(config, broker_client=broker_client)
        broker = self._config.broker
        self._device = device or DeviceLink(self._config.device)
        self._worker = CommandRelayWorker(
            self._connection,
            self._device,
            commands_queue=broker.commands_queue,
            responses_queue=broker.responses_queue,
            timeout=self._config.device.relay_timeout,
        )

    @property
    def worker(self) -> CommandRelayWorker:
        return self._worker

    def _on_fatal(self, error: BrokerFatalError) -> None:
        super()._on_fatal(error)
        self.request_shutdown()

    async def _run(self) -> int:
        device = self._device
        if isinstance(device, DeviceLink):
            try:
                await device.open()
                await device.enter_sdk_mode(self._config.device.relay_timeout)
            except DeviceLinkError as exc:
                LOGGER.error("Failed to connect to vehicle: %s", exc)
                self._health.update("device", False, str(exc))
                return EXIT_FAILURE
        self._health.update("device", True, "sdk mode")

        self._connection.start()
        self._worker.start()
        LOGGER.info("Relay started, listening for broker commands")

        assert self._shutdown_event is not None
        await self._shutdown_event.wait()

        if self._fatal_error is not None:
            LOGGER.error("Broker connection failed: %s", self._fatal_error)
            return EXIT_FAILURE
        return EXIT_OK

    async def _stop_services(self) -> None:
        await self._worker.stop()
        await super()._stop_services()
        if isinstance(self._device, DeviceLink):
            self._device.close()
