"""UDP request/response link to the vehicle."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Tuple

from ..config import DeviceConfig
from ..core.correlation import ReplySlot
from ..core.models import REPLY_OK, SDK_MODE, normalize_reply
from ..core.utils import wait_until

LOGGER = logging.getLogger(__name__)


class DeviceLinkError(RuntimeError):
    """Raised when the vehicle link cannot be opened or refuses SDK mode."""


class _ControlProtocol(asyncio.DatagramProtocol):
    def __init__(self, link: "DeviceLink") -> None:
        self._link = link

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        self._link._handle_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        LOGGER.warning("UDP receive error: %s", exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc is not None:
            LOGGER.warning("UDP control socket closed with error: %s", exc)


class DeviceLink:
    """Strictly sequential command/reply exchange with a Tello-style vehicle.

    The link binds the fixed local control port, sends each command as one
    datagram to the vehicle and takes the next datagram coming from the
    vehicle's command port as the reply. Traffic from any other source port is
    dropped without affecting the pending timeout.
    """

    def __init__(self, config: DeviceConfig) -> None:
        self._config = config
        self._remote = (config.host, config.command_port)
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._slot = ReplySlot("device")

    @property
    def is_open(self) -> bool:
        return self._transport is not None

    @property
    def local_address(self) -> Optional[Tuple[str, int]]:
        if self._transport is None:
            return None
        return self._transport.get_extra_info("sockname")

    async def open(self) -> None:
        if self._transport is not None:
            return

        loop = asyncio.get_running_loop()
        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _ControlProtocol(self),
                local_addr=(self._config.local_host, self._config.local_port),
            )
        except OSError as exc:
            raise DeviceLinkError(
                f"Failed to bind UDP control port {self._config.local_port}: {exc}"
            ) from exc

        self._transport = transport
        LOGGER.info(
            "Device link bound to %s, vehicle at %s:%s",
            self.local_address,
            *self._remote,
        )

    def close(self) -> None:
        transport = self._transport
        self._transport = None
        self._slot.reset()
        if transport is not None:
            transport.close()

    async def exchange(self, command: str, timeout: float) -> Optional[str]:
        """Send ``command`` and wait for the vehicle's reply.

        Returns:
            The reply text, or None if no reply came from the vehicle's command
            port within ``timeout`` seconds or the datagram could not be sent.

        Raises:
            DeviceLinkError: The link has not been opened.
            ExchangeInFlightError: Another exchange is still waiting for a reply.
        """

        if not self.is_open:
            raise DeviceLinkError("Device link is not open")

        self._slot.arm()
        try:
            try:
                self._transport.sendto(command.encode("ascii"), self._remote)
            except (OSError, UnicodeEncodeError) as exc:
                LOGGER.warning("UDP send of %r failed: %s", command, exc)
                return None

            LOGGER.debug("Sent %r to %s:%s", command, *self._remote)
            if not await wait_until(lambda: self._slot.ready, timeout):
                LOGGER.warning("No response received for command: %s", command)
            return self._slot.take()
        finally:
            self._slot.reset()

    async def enter_sdk_mode(self, timeout: float) -> None:
        """Switch the vehicle into SDK mode; it ignores other commands until then."""

        reply = await self.exchange(SDK_MODE, timeout)
        if reply is None or normalize_reply(reply) != REPLY_OK:
            raise DeviceLinkError(f"Vehicle refused SDK mode (reply={reply!r})")
        LOGGER.info("Vehicle accepted SDK mode")

    def _handle_datagram(self, data: bytes, addr: Tuple[str, int]) -> None:
        if addr[1] != self._remote[1]:
            LOGGER.debug("Ignoring datagram from unexpected port %s:%s", *addr)
            return

        reply = data.decode("ascii", errors="replace").strip()
        LOGGER.info("Received UDP data: %s", reply)
        self._slot.offer(reply)
