"""
MQTT subscriber feeding externally published measurements into the store.

The subscriber holds a single long-lived subscription to one topic. Each
delivered message is decoded as a measurement, stamped with the receive time
and inserted. Undecodable messages and store failures are logged and the
message is dropped; there is no retry and no acknowledgment tracking beyond
the QoS the subscription was made with.

Subscription lifecycle:
    stopped -> connecting -> subscribed

Failing to connect or subscribe is fatal: start() raises ConnectivityError.
Losing the broker after subscribing ends the loop with ConnectivityError.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, Any

import aiomqtt

from resource_monitor.config import BusConfig, parse_broker_uri
from resource_monitor.errors import (
    ConnectivityError,
    DecodeError,
    FailedPreconditionError,
    MonitorError,
)
from resource_monitor.logging import get_logger
from resource_monitor.models import Measurement, utc_now

if TYPE_CHECKING:
    from resource_monitor.metrics.storage import MeasurementStore

logger = get_logger(__name__)

# Protocol-level records from the MQTT client itself
mqtt_logger = get_logger("bus.mqtt")

# Builds the MQTT client; must return an async context manager exposing
# subscribe() and an async-iterable `messages` attribute.
ClientFactory = Callable[[BusConfig], Any]


class SubscriptionStatus(str, Enum):
    """Status of the bus subscription."""

    STOPPED = "stopped"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"


def create_mqtt_client(config: BusConfig) -> aiomqtt.Client:
    """Create an aiomqtt client for the configured broker."""
    hostname, port = parse_broker_uri(config.broker_uri)
    return aiomqtt.Client(
        hostname,
        port=port,
        identifier=config.client_id,
        keepalive=config.keepalive_seconds,
        logger=mqtt_logger,
    )


class MeasurementSubscriber:
    """
    Long-lived MQTT subscription that stores incoming measurements.

    Example:
        >>> subscriber = MeasurementSubscriber(store, config.bus)
        >>> await subscriber.start()  # returns once subscribed
        >>> await subscriber.stop()
    """

    def __init__(
        self,
        store: MeasurementStore,
        config: BusConfig | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        """
        Initialize the MeasurementSubscriber.

        Args:
            store: MeasurementStore receiving decoded measurements.
            config: Bus settings (broker, topic, QoS).
            client_factory: Optional factory for the MQTT client.
        """
        self._store = store
        self._config = config or BusConfig()
        self._client_factory = client_factory or create_mqtt_client
        self._status = SubscriptionStatus.STOPPED
        self._subscribed = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self.received_count = 0
        self.stored_count = 0
        self.dropped_count = 0

    @property
    def status(self) -> SubscriptionStatus:
        """Current subscription status."""
        return self._status

    @property
    def topic(self) -> str:
        """Subscribed topic."""
        return self._config.topic

    @property
    def task(self) -> asyncio.Task[None] | None:
        """Background task running the subscription, if started."""
        return self._task

    async def handle_message(
        self,
        payload: Any,
        topic: str | None = None,
    ) -> Measurement | None:
        """
        Decode one message and store it.

        Args:
            payload: Raw message payload.
            topic: Topic the message arrived on (for logging).

        Returns:
            The stored Measurement, or None if the message was dropped.
        """
        received_at = utc_now()
        self.received_count += 1

        try:
            measurement = Measurement.from_payload(payload, received_at=received_at)
        except DecodeError as e:
            self.dropped_count += 1
            logger.warning(
                "Dropping undecodable message",
                extra={"topic": topic, "error": e.message},
            )
            return None

        try:
            await self._store.insert(measurement)
        except MonitorError as e:
            self.dropped_count += 1
            logger.error(
                "Failed to store bus measurement",
                extra={"topic": topic, "error": e.message, "error_code": e.error_code},
            )
            return None

        self.stored_count += 1
        logger.debug(
            "Stored bus measurement",
            extra={"topic": topic, "id": measurement.id},
        )
        return measurement

    async def start(self) -> None:
        """
        Connect, subscribe and start consuming in the background.

        Returns once the subscription is active.

        Raises:
            FailedPreconditionError: If the subscriber is already started.
            ConnectivityError: If connecting or subscribing fails.
        """
        if self._task is not None and not self._task.done():
            raise FailedPreconditionError(
                "Subscriber is already running", details={"topic": self.topic}
            )

        self._subscribed.clear()
        self._task = asyncio.create_task(self._subscription_loop())
        waiter = asyncio.create_task(self._subscribed.wait())

        done, _ = await asyncio.wait(
            {self._task, waiter}, return_when=asyncio.FIRST_COMPLETED
        )
        if waiter not in done:
            waiter.cancel()
            # Raises ConnectivityError from the loop
            self._task.result()
            raise ConnectivityError(
                "Subscription ended before it became active",
                details={"topic": self.topic},
            )

    async def stop(self) -> None:
        """Close the subscription."""
        if self._task is None:
            return

        if not self._task.done():
            self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError, MonitorError):
            await self._task
        self._task = None
        self._status = SubscriptionStatus.STOPPED
        logger.info(
            "Bus subscriber stopped",
            extra={"topic": self.topic, "stored_count": self.stored_count},
        )

    async def _subscription_loop(self) -> None:
        """Connect, subscribe and consume messages until cancelled."""
        self._status = SubscriptionStatus.CONNECTING
        logger.info(
            "Connecting to message bus",
            extra={"broker_uri": self._config.broker_uri, "topic": self.topic},
        )

        try:
            async with self._client_factory(self._config) as client:
                await client.subscribe(self.topic, qos=self._config.qos)
                self._status = SubscriptionStatus.SUBSCRIBED
                self._subscribed.set()
                logger.info(
                    "Subscribed to message bus topic",
                    extra={"topic": self.topic, "qos": self._config.qos},
                )

                async for message in client.messages:
                    await self.handle_message(message.payload, topic=str(message.topic))
        except aiomqtt.MqttError as e:
            logger.error(
                "Message bus connection failed",
                extra={
                    "broker_uri": self._config.broker_uri,
                    "topic": self.topic,
                    "error": str(e),
                },
            )
            raise ConnectivityError(
                f"Message bus unavailable: {e}",
                details={"broker_uri": self._config.broker_uri, "topic": self.topic},
            ) from e
        finally:
            self._status = SubscriptionStatus.STOPPED
