"""
Message bus ingestion for the resource monitor.

Components:
- subscriber: MQTT subscription decoding published measurements into the store
"""

from resource_monitor.bus.subscriber import (
    MeasurementSubscriber,
    SubscriptionStatus,
    create_mqtt_client,
)

__all__ = [
    "MeasurementSubscriber",
    "SubscriptionStatus",
    "create_mqtt_client",
]
