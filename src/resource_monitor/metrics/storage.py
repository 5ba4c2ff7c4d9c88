"""
MongoDB storage layer for measurement persistence.

This module implements the MeasurementStore class that handles:
- Inserting measurements
- Fetching all measurements or one by id
- Full-document replacement and deletion by id

One pymongo.MongoClient (which owns its own connection pool) is created at
startup and shared by every operation. The driver is synchronous, so each
operation runs in the default executor under a uniform timeout budget.

Document shape:
    {
        "_id": ObjectId,
        "timestamp": datetime (UTC, millisecond precision),
        "cpu": float,
        "ram": float
    }
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, TypeVar

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import MongoClient
from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import ConnectionFailure, PyMongoError

from resource_monitor.errors import (
    ConnectivityError,
    DecodeError,
    NotFoundError,
    StoreError,
)
from resource_monitor.logging import get_logger
from resource_monitor.models import Measurement

if TYPE_CHECKING:
    from pymongo.collection import Collection

    from resource_monitor.config import StoreConfig

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_DATABASE = "go-database"
DEFAULT_COLLECTION = "resource-mon"
DEFAULT_TIMEOUT_SECONDS = 10.0


def parse_object_id(value: str) -> ObjectId:
    """
    Parse a measurement id string.

    Args:
        value: 24-character hex string.

    Returns:
        The corresponding ObjectId.

    Raises:
        DecodeError: If the string is not a valid ObjectId.
    """
    try:
        return ObjectId(value)
    except (InvalidId, TypeError) as e:
        raise DecodeError("Invalid measurement id", details={"id": value}) from e


def decode_document(document: dict[str, Any]) -> Measurement:
    """
    Build a Measurement from a stored document.

    Raises:
        StoreError: If the document is missing a field or holds a value that
            is not a valid measurement.
    """
    try:
        return Measurement.from_document(document)
    except PydanticValidationError as e:
        raise StoreError(
            "Stored measurement is malformed",
            details={
                "id": str(document.get("_id")),
                "errors": e.errors(include_url=False, include_input=False),
            },
        ) from e


class MeasurementStore:
    """
    MongoDB-backed gateway for measurement records.

    Every operation is bounded by the same timeout; exceeding it or losing
    the server raises ConnectivityError, any other driver failure raises
    StoreError.

    Example:
        >>> store = MeasurementStore.from_config(config.store)
        >>> await store.initialize()
        >>> measurement_id = await store.insert(Measurement(cpu=12.5, ram=40.0))
        >>> measurement = await store.find_by_id(measurement_id)
    """

    def __init__(
        self,
        client: MongoClient[dict[str, Any]],
        database: str = DEFAULT_DATABASE,
        collection: str = DEFAULT_COLLECTION,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        """
        Initialize the MeasurementStore.

        Args:
            client: Shared MongoClient (or a compatible client).
            database: Database name.
            collection: Collection name.
            timeout_seconds: Timeout budget for every operation.
        """
        self._client = client
        self._database = database
        self._collection_name = collection
        self._collection: Collection[dict[str, Any]] = client[database][collection]
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_config(cls, config: StoreConfig) -> MeasurementStore:
        """
        Create a store with a new shared MongoClient.

        The client connects lazily; call initialize() to verify connectivity.
        """
        timeout_ms = int(config.timeout_seconds * 1000)
        client: MongoClient[dict[str, Any]] = MongoClient(
            config.uri,
            tz_aware=True,
            timeoutMS=timeout_ms,
            serverSelectionTimeoutMS=timeout_ms,
            connect=False,
        )
        return cls(
            client,
            database=config.database,
            collection=config.collection,
            timeout_seconds=config.timeout_seconds,
        )

    async def _run(self, operation: str, func: Callable[[], T]) -> T:
        """
        Run a blocking driver call in the executor under the timeout budget.

        Raises:
            ConnectivityError: On timeout or connection failure.
            StoreError: On any other driver error.
        """
        loop = asyncio.get_event_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, func),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as e:
            logger.error(
                "Store operation timed out",
                extra={"operation": operation, "timeout_seconds": self.timeout_seconds},
            )
            raise ConnectivityError(
                f"Store operation '{operation}' timed out",
                details={"operation": operation, "timeout_seconds": self.timeout_seconds},
            ) from e
        except ConnectionFailure as e:
            logger.error(
                "Store unreachable",
                extra={"operation": operation, "error": str(e)},
            )
            raise ConnectivityError(
                f"Store unreachable: {e}",
                details={"operation": operation},
            ) from e
        except PyMongoError as e:
            logger.error(
                "Store operation failed",
                extra={"operation": operation, "error": str(e)},
            )
            raise StoreError(
                f"Store operation '{operation}' failed: {e}",
                details={"operation": operation},
            ) from e

    async def initialize(self) -> None:
        """
        Verify that the store is reachable.

        Raises:
            ConnectivityError: If the server cannot be reached.
        """

        def _ping() -> None:
            self._client.admin.command("ping")

        try:
            await self._run("ping", _ping)
        except StoreError as e:
            raise ConnectivityError(
                f"Store unreachable: {e.message}",
                details={"database": self._database},
            ) from e

        logger.info(
            "Measurement store connected",
            extra={"database": self._database, "collection": self._collection_name},
        )

    async def insert(self, measurement: Measurement) -> str:
        """
        Insert a measurement.

        Sets measurement.id to the assigned id.

        Returns:
            The assigned id as a hex string.
        """
        document = measurement.to_document()

        def _insert() -> Any:
            return self._collection.insert_one(document).inserted_id

        inserted_id = await self._run("insert", _insert)
        measurement.id = str(inserted_id)
        logger.debug("Inserted measurement", extra={"id": measurement.id})
        return measurement.id

    async def find_all(self) -> list[Measurement]:
        """
        Return every stored measurement.

        Malformed documents are logged and skipped.
        """

        def _find_all() -> list[dict[str, Any]]:
            return list(self._collection.find({}))

        documents = await self._run("find_all", _find_all)

        measurements = []
        for document in documents:
            try:
                measurements.append(decode_document(document))
            except StoreError as e:
                logger.warning(
                    "Skipping malformed measurement document",
                    extra={"id": e.details.get("id"), "error": e.message},
                )
        return measurements

    async def find_by_id(self, measurement_id: str) -> Measurement:
        """
        Fetch one measurement.

        Raises:
            DecodeError: If the id is malformed.
            NotFoundError: If no measurement has this id.
            StoreError: If the stored document is malformed.
        """
        object_id = parse_object_id(measurement_id)

        def _find_one() -> dict[str, Any] | None:
            return self._collection.find_one({"_id": object_id})

        document = await self._run("find_by_id", _find_one)
        if document is None:
            raise NotFoundError(
                "Measurement not found", details={"id": measurement_id}
            )
        return decode_document(document)

    async def replace(self, measurement_id: str, measurement: Measurement) -> Measurement:
        """
        Overwrite a stored measurement with a full document.

        Returns:
            The stored measurement, carrying measurement_id.

        Raises:
            DecodeError: If the id is malformed.
            NotFoundError: If no measurement has this id.
        """
        object_id = parse_object_id(measurement_id)
        document = measurement.to_document()

        def _replace() -> int:
            return self._collection.replace_one({"_id": object_id}, document).matched_count

        matched = await self._run("replace", _replace)
        if not matched:
            raise NotFoundError(
                "Measurement not found", details={"id": measurement_id}
            )
        return measurement.model_copy(update={"id": str(object_id)})

    async def delete(self, measurement_id: str) -> None:
        """
        Delete a measurement.

        Raises:
            DecodeError: If the id is malformed.
            NotFoundError: If no measurement has this id.
        """
        object_id = parse_object_id(measurement_id)

        def _delete() -> int:
            return self._collection.delete_one({"_id": object_id}).deleted_count

        deleted = await self._run("delete", _delete)
        if not deleted:
            raise NotFoundError(
                "Measurement not found", details={"id": measurement_id}
            )
        logger.debug("Deleted measurement", extra={"id": measurement_id})

    async def close(self) -> None:
        """Close the shared client."""
        self._client.close()
        logger.debug("Measurement store closed")
