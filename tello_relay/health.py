"""Health reporting for the controller and relay processes."""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

from aiohttp import web

from .connection import ConnectionState
from .core.models import FlightStage

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ComponentStatus:
    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }


class HealthReporter:
    """Tracks component statuses for the running process.

    Updates come from loop callbacks (connection state changes, flight stage
    changes), so they are plain synchronous calls.
    """

    def __init__(self, role: str) -> None:
        self._role = role
        self._status: Dict[str, ComponentStatus] = {}
        self._flight_stage: Optional[FlightStage] = None

    def update(self, name: str, healthy: bool, detail: Optional[str] = None) -> None:
        self._status[name] = ComponentStatus(name=name, healthy=healthy, detail=detail)

    def on_connection_state(self, state: ConnectionState) -> None:
        self.update("broker", state == ConnectionState.CONNECTED, state.value)

    def on_flight_stage(self, stage: FlightStage) -> None:
        self._flight_stage = stage
        self.update("flight", stage != FlightStage.ABORTED, stage.value)

    def snapshot(self) -> Dict[str, object]:
        components = [status.as_dict() for status in self._status.values()]
        overall = "ok" if all(item["healthy"] for item in components) else "degraded"

        payload: Dict[str, object] = {
            "status": overall,
            "role": self._role,
            "components": components,
        }
        if self._flight_stage is not None:
            payload["flightStage"] = self._flight_stage.value
        return payload


class HealthServer:
    """Minimal HTTP server exposing `/healthz` for status checks."""

    def __init__(self, reporter: HealthReporter, host: str, port: int) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info(
            "Health endpoint listening on http://%s:%s/healthz", self._host, self._port
        )

    async def stop(self) -> None:
        with contextlib.suppress(RuntimeError):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = self._reporter.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)
