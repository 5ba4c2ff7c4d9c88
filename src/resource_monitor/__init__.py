"""
Resource Monitor - host CPU/RAM sampling with MQTT ingestion and a CRUD API.

This package samples host utilization on a timer, stores measurements
published on an MQTT topic, persists everything to MongoDB and serves the
collection over HTTP.
"""

__version__ = "0.1.0"
