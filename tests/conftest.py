"""
Pytest configuration for the resource monitor tests.
"""

from __future__ import annotations

import mongomock
import pytest

from resource_monitor.metrics.storage import MeasurementStore

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


@pytest.fixture
def mongo_client() -> mongomock.MongoClient:
    """In-memory MongoDB client."""
    return mongomock.MongoClient(tz_aware=True)


@pytest.fixture
def store(mongo_client: mongomock.MongoClient) -> MeasurementStore:
    """MeasurementStore backed by the in-memory client."""
    return MeasurementStore(
        mongo_client,
        database="test-monitoring",
        collection="measurements",
        timeout_seconds=5.0,
    )
