"""Adapter modules for external integrations."""

from .mqtt import MQTTClient, MQTTConnectionError
from .udp import DeviceLink, DeviceLinkError

__all__ = [
    "DeviceLink",
    "DeviceLinkError",
    "MQTTClient",
    "MQTTConnectionError",
]
