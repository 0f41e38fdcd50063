"""Consumer side: forwards broker commands to the vehicle and returns replies."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Optional

from .adapters.udp import DeviceLinkError
from .connection import BrokerConnection
from .core.models import REPLY_ERROR, REPLY_INVALID_COMMAND, Command, CommandFormatError
from .core.protocols import DeviceExchange

LOGGER = logging.getLogger(__name__)


class CommandRelayWorker:
    """Relays each inbound command to the device link, one at a time.

    Deliveries are queued in arrival order and handled by a single task, which
    matches the vehicle protocol: it answers one request at a time and carries
    no correlation identifiers.
    """

    def __init__(
        self,
        connection: BrokerConnection,
        device: DeviceExchange,
        *,
        commands_queue: str,
        responses_queue: str,
        timeout: float,
    ) -> None:
        self._connection = connection
        self._device = device
        self._responses_queue = responses_queue
        self._timeout = timeout
        self._inbox: asyncio.Queue[bytes] = asyncio.Queue()
        self._task: Optional[asyncio.Task[None]] = None
        self.relayed = 0

        connection.consume(commands_queue, self._on_command)

    @property
    def pending(self) -> int:
        return self._inbox.qsize()

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            LOGGER.warning("Relay worker already running")
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self.pending:
            LOGGER.warning("Relay stopped with %d command(s) not relayed", self.pending)

    async def join(self) -> None:
        """Wait until every delivery received so far has been relayed."""
        await self._inbox.join()

    async def relay(self, payload: bytes) -> str:
        """Forward one command and publish the reply; returns the reply sent."""

        try:
            command = Command.parse(payload.decode("ascii"))
        except (UnicodeDecodeError, CommandFormatError) as exc:
            LOGGER.error("Received undecodable command %r: %s", payload, exc)
            reply = REPLY_INVALID_COMMAND
        else:
            LOGGER.info("Received command: %s", command)
            try:
                response = await self._device.exchange(str(command), self._timeout)
            except DeviceLinkError as exc:
                LOGGER.error("Failed to send command %s: %s", command, exc)
                response = None

            if response is None:
                LOGGER.warning("No response from vehicle for %s", command)
                reply = REPLY_ERROR
            else:
                LOGGER.info("Vehicle response: %s", response)
                reply = response

        self._connection.publish_or_enqueue(
            self._responses_queue, reply.encode("ascii", errors="replace")
        )
        self.relayed += 1
        return reply

    def _on_command(self, payload: bytes) -> None:
        self._inbox.put_nowait(payload)

    async def _run(self) -> None:
        while True:
            payload = await self._inbox.get()
            try:
                await self.relay(payload)
            except Exception:
                LOGGER.exception("Relaying %r failed", payload)
                self._connection.publish_or_enqueue(
                    self._responses_queue, REPLY_ERROR.encode("ascii")
                )
            finally:
                self._inbox.task_done()
