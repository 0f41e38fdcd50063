"""Protocol definitions for the broker client and the device link."""

from __future__ import annotations

from typing import Awaitable, Callable, Optional, Protocol


MessageHandler = Callable[[str, bytes], Awaitable[None] | None]
DisconnectHandler = Callable[[int], None]


class BrokerClient(Protocol):
    """Minimal contract the broker connection needs from a client adapter."""

    async def connect(self, timeout: float = 30.0) -> None:
        """Open a fresh session and wait for the broker's acknowledgement.

        Raises:
            MQTTConnectionError: If the broker refuses or does not answer.
        """
        ...

    async def disconnect(self, timeout: float = 5.0) -> None:
        """Close the session gracefully."""
        ...

    def teardown(self) -> None:
        """Drop the underlying client without waiting for a handshake."""
        ...

    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> bool:
        """Hand a message to the client buffer; returns whether it was accepted."""
        ...

    def subscribe(self, topic: str, qos: int = 1) -> None:
        ...

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        ...

    def register_disconnect_handler(self, handler: DisconnectHandler) -> None:
        ...


class DeviceExchange(Protocol):
    """Request/response channel to the vehicle."""

    async def exchange(self, command: str, timeout: float) -> Optional[str]:
        """Send ``command`` and return the reply text, or None on timeout."""
        ...
