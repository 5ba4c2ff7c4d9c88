"""
Measurement sampling and storage for the resource monitor.

Components:
- storage: MongoDB gateway for measurement persistence
- sampler: Background host sampling job using asyncio
"""

from resource_monitor.metrics.sampler import MeasurementSampler, sample
from resource_monitor.metrics.storage import MeasurementStore

__all__ = [
    "MeasurementSampler",
    "MeasurementStore",
    "sample",
]
