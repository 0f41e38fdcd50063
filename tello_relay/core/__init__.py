"""Core primitives for tello-relay."""

from .correlation import ExchangeInFlightError, ReplySlot
from .models import (
    Command,
    CommandFormatError,
    CommandOutcome,
    FlightResult,
    FlightStage,
    ReplyOutcome,
    classify_reply,
)
from .protocols import BrokerClient, DeviceExchange, MessageHandler
from .utils import wait_until
from .validation import CommandValidationError, CommandValidator

__all__ = [
    "BrokerClient",
    "Command",
    "CommandFormatError",
    "CommandOutcome",
    "CommandValidationError",
    "CommandValidator",
    "DeviceExchange",
    "ExchangeInFlightError",
    "FlightResult",
    "FlightStage",
    "MessageHandler",
    "ReplyOutcome",
    "ReplySlot",
    "classify_reply",
    "wait_until",
]
