"""Domain models for commands, replies and flight results."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

REPLY_OK = "ok"
REPLY_ERROR = "error"
REPLY_INVALID_COMMAND = "invalid command"
REPLY_OUT_OF_RANGE = "out of range"

UNRECOVERABLE_REPLIES = frozenset({REPLY_INVALID_COMMAND, REPLY_OUT_OF_RANGE})

MOVEMENT_VERBS = frozenset({"forward", "back", "left", "right", "up", "down"})
ROTATION_VERBS = frozenset({"cw", "ccw"})

SDK_MODE = "command"
TAKEOFF = "takeoff"
LAND = "land"
BATTERY_QUERY = "battery?"
HEIGHT_QUERY = "height?"


class CommandFormatError(ValueError):
    """Raised when text cannot be read as a single command."""


@dataclass(slots=True, frozen=True)
class Command:
    """A single vehicle command such as ``takeoff`` or ``forward 50``."""

    verb: str
    argument: Optional[int] = None

    @classmethod
    def parse(cls, text: str) -> "Command":
        if not text.isascii():
            raise CommandFormatError(f"Command must be ASCII: {text!r}")

        parts = text.split()
        if not parts:
            raise CommandFormatError("Command is empty")
        if len(parts) > 2:
            raise CommandFormatError(f"Command takes at most one argument: {text!r}")

        verb = parts[0]
        if len(parts) == 1:
            return cls(verb)

        try:
            argument = int(parts[1])
        except ValueError as exc:
            raise CommandFormatError(
                f"Argument for '{verb}' is not an integer: {parts[1]!r}"
            ) from exc
        return cls(verb, argument)

    @property
    def is_landing(self) -> bool:
        return self.verb == LAND

    def __str__(self) -> str:
        if self.argument is None:
            return self.verb
        return f"{self.verb} {self.argument}"


class ReplyOutcome(str, Enum):
    """How the orchestrator treats a reply to a command."""

    OK = "ok"
    RECOVERABLE = "recoverable"
    UNRECOVERABLE = "unrecoverable"


def normalize_reply(reply: str) -> str:
    return reply.strip().lower()


def classify_reply(command: Command, reply: Optional[str]) -> ReplyOutcome:
    """Classify a reply; ``None`` stands for a timeout.

    ``error`` counts as success for ``land`` since the vehicle answers that way
    when it is already on the ground.
    """

    if reply is None:
        return ReplyOutcome.RECOVERABLE

    normalized = normalize_reply(reply)
    if normalized == REPLY_OK:
        return ReplyOutcome.OK
    if command.is_landing and normalized == REPLY_ERROR:
        return ReplyOutcome.OK
    if normalized in UNRECOVERABLE_REPLIES:
        return ReplyOutcome.UNRECOVERABLE
    return ReplyOutcome.RECOVERABLE


class FlightStage(str, Enum):
    PRE_FLIGHT = "pre_flight"
    EXECUTING = "executing"
    LANDING = "landing"
    DONE = "done"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (FlightStage.DONE, FlightStage.ABORTED)


@dataclass(slots=True)
class CommandOutcome:
    command: str
    reply: Optional[str]
    outcome: ReplyOutcome
    attempts: int

    @property
    def retries(self) -> int:
        return max(0, self.attempts - 1)


@dataclass(slots=True)
class FlightResult:
    success: bool
    stage: FlightStage
    reason: Optional[str] = None
    history: List[CommandOutcome] = field(default_factory=list)
