"""Local buffer of messages waiting for the broker connection."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class OutboundMessage:
    queue: str
    payload: bytes


class OutboundQueue:
    """FIFO of messages not yet accepted by the broker client.

    Messages leave the queue strictly from the head and only after the broker
    client accepted them. Draining stops at the first rejected publish so a
    later message can never overtake an earlier one. A message may be published
    more than once across reconnects; delivery is at-least-once.
    """

    def __init__(
        self,
        publish: Callable[[str, bytes], bool],
        is_ready: Callable[[], bool],
    ) -> None:
        self._publish = publish
        self._is_ready = is_ready
        self._pending: Deque[OutboundMessage] = deque()

    def __len__(self) -> int:
        return len(self._pending)

    def enqueue(self, message: OutboundMessage) -> None:
        self._pending.append(message)
        LOGGER.debug(
            "Queued message for %s (%d pending)", message.queue, len(self._pending)
        )

    def publish_or_enqueue(self, message: OutboundMessage) -> bool:
        """Publish now if the connection is ready and nothing is ahead.

        Returns:
            True if ``message`` reached the broker client during this call.
        """

        if not self._is_ready():
            self.enqueue(message)
            return False

        if self._pending:
            ahead = len(self._pending)
            self.enqueue(message)
            return self.drain() > ahead

        if self._publish(message.queue, message.payload):
            return True

        self.enqueue(message)
        return False

    def drain(self) -> int:
        """Publish from the head until empty or a publish is rejected."""

        published = 0
        while self._pending:
            head = self._pending[0]
            if not self._publish(head.queue, head.payload):
                LOGGER.warning(
                    "Publish to %s rejected; %d message(s) remain queued",
                    head.queue,
                    len(self._pending),
                )
                break
            self._pending.popleft()
            published += 1

        if published:
            LOGGER.info("Drained %d queued message(s)", published)
        return published
