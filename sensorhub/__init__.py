"""MQTT telemetry relay: ingest, persist, fan out, and relay actuator commands."""

__version__ = "0.1.0"
