"""Pre-flight checks, command sequencing and landing for one flight."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Callable, List, Optional, Sequence

from .config import FlightConfig
from .connection import BrokerConnection
from .core.correlation import ReplySlot
from .core.models import (
    BATTERY_QUERY,
    HEIGHT_QUERY,
    LAND,
    REPLY_INVALID_COMMAND,
    TAKEOFF,
    Command,
    CommandFormatError,
    CommandOutcome,
    FlightResult,
    FlightStage,
    ReplyOutcome,
    classify_reply,
)
from .core.utils import wait_until
from .core.validation import CommandValidator

LOGGER = logging.getLogger(__name__)

_READING_PATTERN = re.compile(r"^\s*(-?\d+)\s*(dm|cm)?\s*$", re.IGNORECASE)


class FlightAborted(RuntimeError):
    """Raised inside the orchestrator to unwind to the landing stage."""

    def __init__(self, reason: str, *, airborne: bool = True) -> None:
        super().__init__(reason)
        self.reason = reason
        self.airborne = airborne


def parse_reading(reply: Optional[str]) -> Optional[int]:
    """Read a numeric telemetry reply such as ``"87"`` or ``"10dm"``.

    Decimeter readings are converted to centimeters. Returns None when the
    reply is missing or not a number.
    """

    if reply is None:
        return None
    match = _READING_PATTERN.match(reply)
    if match is None:
        return None
    value = int(match.group(1))
    if (match.group(2) or "").lower() == "dm":
        value *= 10
    return value


class FlightOrchestrator:
    """Runs one flight: pre-flight, the configured sequence, then landing.

    Every command travels through the broker ``commands`` queue and its reply
    comes back on ``responses``. Exactly one command is outstanding at a time;
    its reply lands in a single :class:`ReplySlot`. Whatever happens after
    takeoff, the orchestrator tries to put the vehicle back on the ground
    before reporting the result.
    """

    def __init__(
        self,
        connection: BrokerConnection,
        config: FlightConfig,
        *,
        commands_queue: str,
        responses_queue: str,
        sequence: Optional[Sequence[str]] = None,
    ) -> None:
        self._connection = connection
        self._config = config
        self._commands_queue = commands_queue
        self._validator = CommandValidator(config)
        self._sequence: List[str] = list(
            config.sequence if sequence is None else sequence
        )
        self._slot = ReplySlot("responses")
        self._stage = FlightStage.PRE_FLIGHT
        self._history: List[CommandOutcome] = []
        self._stage_callbacks: List[Callable[[FlightStage], None]] = []
        self._abort_reason: Optional[str] = None

        connection.consume(responses_queue, self._on_response)

    @property
    def stage(self) -> FlightStage:
        return self._stage

    @property
    def history(self) -> List[CommandOutcome]:
        return list(self._history)

    def register_stage_callback(self, callback: Callable[[FlightStage], None]) -> None:
        self._stage_callbacks.append(callback)

    def request_abort(self, reason: str) -> None:
        """Stop at the next command boundary and land."""

        if self._stage.is_terminal:
            LOGGER.debug("Flight already %s; ignoring abort", self._stage.value)
            return
        if self._abort_reason is None:
            self._abort_reason = reason
            LOGGER.warning("Abort requested: %s", reason)

    async def run(self) -> FlightResult:
        """Fly the configured sequence.

        Returns:
            A :class:`FlightResult`; ``success`` is True only when pre-flight,
            every command and the final landing all succeeded.
        """

        self._history = []
        self._set_stage(FlightStage.PRE_FLIGHT)

        try:
            await self._pre_flight()
            self._set_stage(FlightStage.EXECUTING)
            await self._execute_sequence()
        except FlightAborted as exc:
            LOGGER.error("Flight aborted: %s", exc.reason)
            if exc.airborne:
                self._set_stage(FlightStage.LANDING)
                await self._land()
            self._set_stage(FlightStage.ABORTED)
            return self._result(False, exc.reason)

        self._set_stage(FlightStage.LANDING)
        if not await self._land():
            self._set_stage(FlightStage.ABORTED)
            return self._result(False, "landing was not confirmed")

        self._set_stage(FlightStage.DONE)
        LOGGER.info("Flight sequence completed")
        return self._result(True, None)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    async def _pre_flight(self) -> None:
        config = self._config

        if not await self._connection.wait_until_connected(config.connect_timeout):
            raise FlightAborted("broker not reachable before pre-flight", airborne=False)

        self._check_abort(airborne=False)
        battery = parse_reading(await self.send(BATTERY_QUERY, config.default_timeout))
        self._check_abort(airborne=False)
        if battery is None:
            raise FlightAborted("battery level unavailable", airborne=False)
        LOGGER.info("Battery level: %d%%", battery)
        if battery < config.min_battery_level:
            raise FlightAborted(
                f"battery {battery}% below minimum {config.min_battery_level}%",
                airborne=False,
            )

        if not await self._take_off():
            raise FlightAborted(
                f"takeoff failed after {config.max_takeoff_attempts} attempt(s)",
                airborne=False,
            )

        await asyncio.sleep(config.stabilization_delay)
        self._check_abort(airborne=True)

        height = parse_reading(await self.send(HEIGHT_QUERY, config.default_timeout))
        self._check_abort(airborne=True)
        if height is None:
            raise FlightAborted("height unavailable after takeoff")
        LOGGER.info("Height after takeoff: %dcm", height)
        if height < config.min_height_after_takeoff:
            raise FlightAborted(
                f"height {height}cm below minimum {config.min_height_after_takeoff}cm"
            )

    async def _take_off(self) -> bool:
        takeoff = Command(TAKEOFF)
        for attempt in range(1, self._config.max_takeoff_attempts + 1):
            self._check_abort(airborne=False)
            reply = await self.send(TAKEOFF, self._config.takeoff_timeout)
            outcome = classify_reply(takeoff, reply)
            self._record(TAKEOFF, reply, outcome, attempt)
            if outcome == ReplyOutcome.OK:
                LOGGER.info("Takeoff acknowledged")
                return True

            LOGGER.warning(
                "Takeoff attempt %d/%d failed (reply=%r); landing before retry",
                attempt,
                self._config.max_takeoff_attempts,
                reply,
            )
            # The vehicle may have left the ground without acknowledging.
            await self._land(attempts=1)
        return False

    async def _execute_sequence(self) -> None:
        for text in self._sequence:
            self._check_abort(airborne=True)
            outcome = await self.execute(text)
            if outcome.outcome == ReplyOutcome.UNRECOVERABLE:
                raise FlightAborted(f"'{text}' rejected (reply={outcome.reply!r})")
            self._check_abort(airborne=True)
            if outcome.outcome != ReplyOutcome.OK:
                raise FlightAborted(
                    f"'{text}' failed after {outcome.attempts} attempt(s)"
                )
            await asyncio.sleep(self._config.command_interval)

    async def execute(self, text: str) -> CommandOutcome:
        """Send one sequence command with retries and classify the result."""

        config = self._config
        try:
            command = self._validator.validate(text)
        except CommandFormatError as exc:
            LOGGER.error("Rejected command '%s' locally: %s", text, exc)
            return self._record(
                text, REPLY_INVALID_COMMAND, ReplyOutcome.UNRECOVERABLE, 0
            )

        reply: Optional[str] = None
        outcome = ReplyOutcome.RECOVERABLE
        attempt = 0
        while attempt < config.max_command_retries:
            attempt += 1
            reply = await self.send(str(command), config.default_timeout)
            outcome = classify_reply(command, reply)

            if outcome == ReplyOutcome.OK:
                LOGGER.info("Command '%s' acknowledged (%r)", command, reply)
                break
            if outcome == ReplyOutcome.UNRECOVERABLE:
                LOGGER.error("Command '%s' rejected by vehicle (%r)", command, reply)
                break

            LOGGER.warning(
                "Command '%s' attempt %d/%d failed (reply=%r)",
                command,
                attempt,
                config.max_command_retries,
                reply,
            )
            if self._interrupted:
                break
            if attempt < config.max_command_retries:
                await asyncio.sleep(config.retry_delay)

        return self._record(str(command), reply, outcome, attempt)

    async def _land(self, attempts: Optional[int] = None) -> bool:
        land = Command(LAND)
        limit = attempts or self._config.max_landing_attempts
        for attempt in range(1, limit + 1):
            reply = await self.send(LAND, self._config.landing_timeout)
            outcome = classify_reply(land, reply)
            self._record(LAND, reply, outcome, attempt)
            if outcome == ReplyOutcome.OK:
                LOGGER.info("Landing confirmed (%r)", reply)
                return True
            LOGGER.warning(
                "Landing attempt %d/%d not confirmed (reply=%r)", attempt, limit, reply
            )
            if self._connection.fatal_error is not None:
                break
        return False

    # ------------------------------------------------------------------
    # Broker request/response
    # ------------------------------------------------------------------
    async def send(self, text: str, timeout: float) -> Optional[str]:
        """Publish ``text`` on the commands queue and wait for its reply.

        Returns None when no reply arrived within ``timeout`` or the broker
        connection failed for good while waiting.
        """

        self._slot.arm()
        try:
            self._connection.publish_or_enqueue(
                self._commands_queue, text.encode("ascii")
            )
            LOGGER.info("Published command: %s", text)
            await wait_until(
                lambda: self._slot.ready or self._connection.fatal_error is not None,
                timeout,
            )
            reply = self._slot.take()
            if reply is None:
                LOGGER.warning("No reply to '%s' within %.1fs", text, timeout)
            return reply
        finally:
            self._slot.reset()

    def _on_response(self, payload: bytes) -> None:
        reply = payload.decode("ascii", errors="replace").strip()
        LOGGER.debug("Received reply: %s", reply)
        self._slot.offer(reply)

    @property
    def _interrupted(self) -> bool:
        return (
            self._abort_reason is not None
            or self._connection.fatal_error is not None
        )

    def _check_abort(self, *, airborne: bool) -> None:
        fatal = self._connection.fatal_error
        if fatal is not None:
            raise FlightAborted(f"broker connection lost: {fatal}", airborne=airborne)
        if self._abort_reason is not None:
            raise FlightAborted(self._abort_reason, airborne=airborne)

    def _record(
        self,
        command: str,
        reply: Optional[str],
        outcome: ReplyOutcome,
        attempts: int,
    ) -> CommandOutcome:
        entry = CommandOutcome(
            command=command, reply=reply, outcome=outcome, attempts=attempts
        )
        self._history.append(entry)
        return entry

    def _set_stage(self, stage: FlightStage) -> None:
        if stage == self._stage:
            return
        previous = self._stage
        self._stage = stage
        LOGGER.info("Flight stage %s -> %s", previous.value, stage.value)
        for callback in self._stage_callbacks:
            callback(stage)

    def _result(self, success: bool, reason: Optional[str]) -> FlightResult:
        return FlightResult(
            success=success,
            stage=self._stage,
            reason=reason,
            history=list(self._history),
        )
