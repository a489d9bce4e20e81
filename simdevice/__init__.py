"""Simulated IoT device client: telemetry uplink, command downlink and twin sync."""

__version__ = "0.1.0"
