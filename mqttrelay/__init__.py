"""Relay one MQTT topic to any number of WebSocket clients."""

__version__ = "0.1.0"
