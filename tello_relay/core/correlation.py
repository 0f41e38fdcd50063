"""Single-slot request/response correlation."""

from __future__ import annotations

import logging
from typing import Optional

LOGGER = logging.getLogger(__name__)


class ExchangeInFlightError(RuntimeError):
    """Raised when a second request is started before the first one finished."""


class ReplySlot:
    """Holds the reply to the one request currently in flight.

    The protocols spoken here carry no correlation identifiers, so a reply is
    matched to the request purely by being the next one to arrive. The slot is
    armed when a request goes out, filled at most once, and emptied by
    :meth:`take` or :meth:`reset` before the next request may be armed.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._armed = False
        self._value: Optional[str] = None

    @property
    def armed(self) -> bool:
        return self._armed

    @property
    def ready(self) -> bool:
        return self._value is not None

    def arm(self) -> None:
        if self._armed:
            raise ExchangeInFlightError(f"{self._name}: a request is already in flight")
        self._armed = True
        self._value = None

    def offer(self, value: str) -> bool:
        """Fill the slot; returns False when nothing is waiting for a reply."""

        if not self._armed:
            LOGGER.debug("%s: discarding unsolicited reply %r", self._name, value)
            return False
        if self._value is not None:
            LOGGER.debug("%s: discarding extra reply %r", self._name, value)
            return False
        self._value = value
        return True

    def take(self) -> Optional[str]:
        """Return the reply (or None when it never came) and release the slot."""

        value = self._value
        self.reset()
        return value

    def reset(self) -> None:
        self._armed = False
        self._value = None
