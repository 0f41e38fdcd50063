"""Constants used across the tello-relay package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "tello-relay"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME

DEFAULT_LOG_PATH = Path.home() / ".local" / "state" / APP_NAME / f"{APP_NAME}.log"

DEFAULT_BROKER_HOST = "localhost"
DEFAULT_BROKER_PORT = 1883

COMMANDS_QUEUE = "commands"
RESPONSES_QUEUE = "responses"

DEFAULT_TELLO_HOST = "192.168.10.1"
DEFAULT_TELLO_COMMAND_PORT = 8889
DEFAULT_LOCAL_CONTROL_PORT = 8889

DEFAULT_SEQUENCE = [
    "forward 50",
    "cw 90",
    "forward 50",
    "cw 90",
    "forward 50",
    "cw 90",
    "forward 50",
    "cw 90",
]
