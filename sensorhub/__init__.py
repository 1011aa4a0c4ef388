"""Sensor telemetry aggregation and delivery agent."""

__version__ = "0.1.0"
