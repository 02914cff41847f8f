"""Caching, aggregation and publishing of ModBus meter readings over HTTP, WebSocket, MQTT, Homie and InfluxDB."""

__version__ = "0.1.0"