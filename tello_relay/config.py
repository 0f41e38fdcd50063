"""Configuration loader for tello-relay."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

from . import constants


class ConfigurationError(ValueError):
    """Raised when the configuration file holds values that cannot be used."""


@dataclass(slots=True, frozen=True)
class BrokerConfig:
    host: str = constants.DEFAULT_BROKER_HOST
    port: int = constants.DEFAULT_BROKER_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: Optional[str] = None
    keepalive: int = 60
    connect_timeout: float = 10.0  # Seconds to wait for CONNACK on each attempt
    commands_queue: str = constants.COMMANDS_QUEUE
    responses_queue: str = constants.RESPONSES_QUEUE


@dataclass(slots=True, frozen=True)
class DeviceConfig:
    host: str = constants.DEFAULT_TELLO_HOST
    command_port: int = constants.DEFAULT_TELLO_COMMAND_PORT
    local_host: str = "0.0.0.0"
    local_port: int = constants.DEFAULT_LOCAL_CONTROL_PORT
    relay_timeout: float = 10.0


@dataclass(slots=True, frozen=True)
class FlightConfig:
    min_battery_level: int = 20  # percent
    min_height_after_takeoff: int = 30  # centimeters
    min_distance: int = 20  # centimeters
    max_distance: int = 500
    min_angle: int = 1  # degrees
    max_angle: int = 360
    default_timeout: float = 15.0
    takeoff_timeout: float = 20.0
    landing_timeout: float = 15.0
    connect_timeout: float = 30.0  # Seconds to wait for the broker before pre-flight
    max_command_retries: int = 3
    max_takeoff_attempts: int = 3
    max_landing_attempts: int = 3
    command_interval: float = 2.0
    retry_delay: float = 1.0
    stabilization_delay: float = 3.0
    sequence: List[str] = field(
        default_factory=lambda: list(constants.DEFAULT_SEQUENCE)
    )


@dataclass(slots=True, frozen=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_network: bool = False


@dataclass(slots=True, frozen=True)
class ResilienceConfig:
    max_reconnect_attempts: int = 5
    reconnect_delay_max: float = 30.0
    shutdown_grace_seconds: float = 1.0
    health_enabled: bool = False
    health_host: str = "127.0.0.1"
    health_port: int = 0


@dataclass(slots=True)
class RelayConfig:
    broker: BrokerConfig
    device: DeviceConfig
    flight: FlightConfig
    logging: LoggingConfig
    resilience: ResilienceConfig
    raw: ConfigParser
    path: Path


def _parse_list(value: str, *, default: Iterable[str]) -> List[str]:
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


def load_config(path: Optional[Path] = None) -> RelayConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "broker": {
                "host": constants.DEFAULT_BROKER_HOST,
                "port": str(constants.DEFAULT_BROKER_PORT),
                "keepalive": "60",
                "connect_timeout": "10.0",
                "commands_queue": constants.COMMANDS_QUEUE,
                "responses_queue": constants.RESPONSES_QUEUE,
            },
            "device": {
                "host": constants.DEFAULT_TELLO_HOST,
                "command_port": str(constants.DEFAULT_TELLO_COMMAND_PORT),
                "local_host": "0.0.0.0",
                "local_port": str(constants.DEFAULT_LOCAL_CONTROL_PORT),
                "relay_timeout": "10.0",
            },
            "flight": {
                "min_battery_level": "20",
                "min_height_after_takeoff": "30",
                "min_distance": "20",
                "max_distance": "500",
                "min_angle": "1",
                "max_angle": "360",
                "default_timeout": "15.0",
                "takeoff_timeout": "20.0",
                "landing_timeout": "15.0",
                "connect_timeout": "30.0",
                "max_command_retries": "3",
                "max_takeoff_attempts": "3",
                "max_landing_attempts": "3",
                "command_interval": "2.0",
                "retry_delay": "1.0",
                "stabilization_delay": "3.0",
                "sequence": ",".join(constants.DEFAULT_SEQUENCE),
            },
            "logging": {
                "level": "INFO",
                "path": str(constants.DEFAULT_LOG_PATH),
                "log_network": "false",
            },
            "resilience": {
                "max_reconnect_attempts": "5",
                "reconnect_delay_max": "30.0",
                "shutdown_grace_seconds": "1.0",
                "health_enabled": "false",
                "health_host": "127.0.0.1",
                "health_port": "0",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    broker_host_value = parser.get("broker", "host")
    broker_port_value = parser.getint(
        "broker", "port", fallback=constants.DEFAULT_BROKER_PORT
    )

    if ":" in broker_host_value:
        host_part, port_part = broker_host_value.rsplit(":", 1)
        try:
            parsed_port = int(port_part)
        except ValueError:
            pass
        else:
            broker_host_value = host_part
            broker_port_value = parsed_port
            parser.set("broker", "host", host_part)
            parser.set("broker", "port", str(parsed_port))

    broker = BrokerConfig(
        host=broker_host_value,
        port=broker_port_value,
        username=parser.get("broker", "username", fallback=None),
        password=parser.get("broker", "password", fallback=None),
        client_id=parser.get("broker", "client_id", fallback=None),
        keepalive=max(1, parser.getint("broker", "keepalive", fallback=60)),
        connect_timeout=max(
            0.1, parser.getfloat("broker", "connect_timeout", fallback=10.0)
        ),
        commands_queue=parser.get("broker", "commands_queue"),
        responses_queue=parser.get("broker", "responses_queue"),
    )

    if broker.commands_queue == broker.responses_queue:
        raise ConfigurationError(
            f"commands_queue and responses_queue must differ (both '{broker.commands_queue}')"
        )

    device = DeviceConfig(
        host=parser.get("device", "host"),
        command_port=parser.getint("device", "command_port"),
        local_host=parser.get("device", "local_host"),
        local_port=parser.getint("device", "local_port"),
        relay_timeout=max(0.1, parser.getfloat("device", "relay_timeout")),
    )

    flight_defaults = FlightConfig()

    flight = FlightConfig(
        min_battery_level=parser.getint("flight", "min_battery_level"),
        min_height_after_takeoff=parser.getint("flight", "min_height_after_takeoff"),
        min_distance=parser.getint("flight", "min_distance"),
        max_distance=parser.getint("flight", "max_distance"),
        min_angle=parser.getint("flight", "min_angle"),
        max_angle=parser.getint("flight", "max_angle"),
        default_timeout=max(0.0, parser.getfloat("flight", "default_timeout")),
        takeoff_timeout=max(0.0, parser.getfloat("flight", "takeoff_timeout")),
        landing_timeout=max(0.0, parser.getfloat("flight", "landing_timeout")),
        connect_timeout=max(0.0, parser.getfloat("flight", "connect_timeout")),
        max_command_retries=max(1, parser.getint("flight", "max_command_retries")),
        max_takeoff_attempts=max(1, parser.getint("flight", "max_takeoff_attempts")),
        max_landing_attempts=max(1, parser.getint("flight", "max_landing_attempts")),
        command_interval=max(0.0, parser.getfloat("flight", "command_interval")),
        retry_delay=max(0.0, parser.getfloat("flight", "retry_delay")),
        stabilization_delay=max(0.0, parser.getfloat("flight", "stabilization_delay")),
        sequence=_parse_list(
            parser.get("flight", "sequence", fallback=""),
            default=flight_defaults.sequence,
        ),
    )

    if flight.min_distance > flight.max_distance:
        raise ConfigurationError(
            f"min_distance ({flight.min_distance}) exceeds max_distance ({flight.max_distance})"
        )
    if flight.min_angle > flight.max_angle:
        raise ConfigurationError(
            f"min_angle ({flight.min_angle}) exceeds max_angle ({flight.max_angle})"
        )

    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(
            parser.get("logging", "path", fallback=str(constants.DEFAULT_LOG_PATH))
        ).expanduser(),
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    resilience = ResilienceConfig(
        max_reconnect_attempts=max(
            0, parser.getint("resilience", "max_reconnect_attempts", fallback=5)
        ),
        reconnect_delay_max=max(
            0.0, parser.getfloat("resilience", "reconnect_delay_max", fallback=30.0)
        ),
        shutdown_grace_seconds=max(
            0.0, parser.getfloat("resilience", "shutdown_grace_seconds", fallback=1.0)
        ),
        health_enabled=parser.getboolean(
            "resilience", "health_enabled", fallback=False
        ),
        health_host=parser.get("resilience", "health_host", fallback="127.0.0.1"),
        health_port=parser.getint("resilience", "health_port", fallback=0),
    )

    return RelayConfig(
        broker=broker,
        device=device,
        flight=flight,
        logging=logging_config,
        resilience=resilience,
        raw=parser,
        path=config_path,
    )
