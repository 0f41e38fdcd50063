"""Local syntactic and range validation of vehicle commands."""

from __future__ import annotations

from ..config import FlightConfig
from .models import MOVEMENT_VERBS, ROTATION_VERBS, Command, CommandFormatError


class CommandValidationError(CommandFormatError):
    """Raised when a command is well formed but outside the allowed limits."""


class CommandValidator:
    """Checks commands against the configured distance and angle limits.

    A verb without an argument always passes. A movement verb's distance (cm)
    and a rotation verb's angle (degrees) must sit inside the configured
    inclusive range. Other verbs are passed through with their argument.
    """

    def __init__(self, flight: FlightConfig) -> None:
        self._min_distance = flight.min_distance
        self._max_distance = flight.max_distance
        self._min_angle = flight.min_angle
        self._max_angle = flight.max_angle

    def validate(self, text: str) -> Command:
        """Parse ``text`` and check its argument.

        Raises:
            CommandFormatError: The text is not a single command with an
                optional integer argument.
            CommandValidationError: A movement or rotation argument is out of
                range.
        """

        command = Command.parse(text)
        argument = command.argument
        if argument is None:
            return command

        if command.verb in MOVEMENT_VERBS:
            lower, upper, unit = self._min_distance, self._max_distance, "cm"
        elif command.verb in ROTATION_VERBS:
            lower, upper, unit = self._min_angle, self._max_angle, "deg"
        else:
            return command

        if not lower <= argument <= upper:
            raise CommandValidationError(
                f"'{command}' outside allowed range {lower}-{upper} {unit}"
            )
        return command
