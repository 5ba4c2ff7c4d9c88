"""
Measurement model and its document/payload codecs.

A Measurement is a timestamped pair of CPU and RAM utilization percentages.
Persisted documents have the shape {_id, timestamp, cpu, ram}; bus payloads
have the shape {timestamp, cpu, ram} with the timestamp ignored.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from resource_monitor.errors import DecodeError

# Payload keys that never reach the stored document from a bus message
_IGNORED_PAYLOAD_KEYS = frozenset({"id", "_id", "timestamp"})


def normalize_timestamp(value: datetime) -> datetime:
    """
    Normalize a datetime to UTC with millisecond precision.

    BSON dates carry milliseconds only, so truncating here keeps the value
    returned by the store equal to the value written. Naive datetimes are
    taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    else:
        value = value.astimezone(UTC)
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def utc_now() -> datetime:
    """Current time, normalized like stored timestamps."""
    return normalize_timestamp(datetime.now(UTC))


class Measurement(BaseModel):
    """A CPU/RAM utilization reading.

    Attributes:
        id: Store-assigned identifier (hex ObjectId), None until inserted.
        timestamp: When the reading was taken or received (UTC).
        cpu: CPU utilization percentage.
        ram: RAM utilization percentage.
    """

    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)

    id: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)
    # Strict: booleans and numeric strings are not utilization values
    cpu: float = Field(strict=True)
    ram: float = Field(strict=True)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str | None:
        """Render ObjectIds and other id values as strings."""
        if v is None or v == "":
            return None
        return str(v)

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: datetime) -> datetime:
        """Normalize timestamps to UTC with millisecond precision."""
        return normalize_timestamp(v)

    def to_document(self) -> dict[str, Any]:
        """Build the stored document body (without _id)."""
        return {
            "timestamp": self.timestamp,
            "cpu": self.cpu,
            "ram": self.ram,
        }

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> Measurement:
        """
        Build a Measurement from a stored document.

        Raises:
            pydantic.ValidationError: If a field is missing or malformed, as
                happens with documents written by other producers.
        """
        return cls.model_validate(
            {
                "id": document.get("_id"),
                "timestamp": document.get("timestamp"),
                "cpu": document.get("cpu"),
                "ram": document.get("ram"),
            }
        )

    @classmethod
    def from_payload(
        cls,
        payload: bytes | bytearray | str,
        *,
        received_at: datetime | None = None,
    ) -> Measurement:
        """
        Decode a message bus payload.

        The payload's own timestamp and id are discarded; the measurement is
        stamped with the receive time.

        Args:
            payload: Raw JSON payload.
            received_at: Receive time (defaults to now).

        Returns:
            A Measurement without an id.

        Raises:
            DecodeError: If the payload is not a JSON object with numeric
                cpu and ram fields.
        """
        if not isinstance(payload, (bytes, bytearray, str)):
            raise DecodeError(
                "Unsupported payload type",
                details={"type": type(payload).__name__},
            )

        try:
            data = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise DecodeError(
                f"Payload is not valid JSON: {e}",
                details={"size": len(payload)},
            ) from e

        if not isinstance(data, dict):
            raise DecodeError(
                "Payload must be a JSON object",
                details={"type": type(data).__name__},
            )

        fields = {k: v for k, v in data.items() if k not in _IGNORED_PAYLOAD_KEYS}
        fields["timestamp"] = received_at or utc_now()

        try:
            return cls.model_validate(fields)
        except PydanticValidationError as e:
            raise DecodeError(
                "Payload is not a valid measurement",
                details={"errors": e.errors(include_url=False, include_input=False)},
            ) from e


class MeasurementBody(Measurement):
    """Request body for creating or replacing a measurement.

    The timestamp is required so that a stored document is exactly what the
    client sent and repeating a replacement leaves it unchanged. Any id in
    the body is ignored.
    """

    timestamp: datetime
