"""tello-relay: broker-backed command relay and flight orchestration for Tello drones."""

__version__ = "0.1.0"
