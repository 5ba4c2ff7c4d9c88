"""
Background host sampling job using asyncio.

This module implements:
- sample(): read instantaneous CPU and RAM utilization via psutil
- MeasurementSampler: a background task that samples on a fixed period,
  stamps each reading with the current time and writes it to the
  MeasurementStore

Each tick is independent: a failed tick is logged and skipped, and the timer
keeps running.
"""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

import psutil

from resource_monitor.errors import FailedPreconditionError, MonitorError, SamplingError
from resource_monitor.logging import get_logger
from resource_monitor.models import Measurement, utc_now

if TYPE_CHECKING:
    from resource_monitor.config import SamplerConfig
    from resource_monitor.metrics.storage import MeasurementStore

logger = get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

DEFAULT_SAMPLING_INTERVAL = 10.0  # seconds
DEFAULT_CPU_INTERVAL = 1.0  # seconds

# How long stop() waits for the loop before cancelling it
STOP_TIMEOUT_SECONDS = 10.0


# =============================================================================
# Enums and Data Models
# =============================================================================


class SamplerStatus(str, Enum):
    """Status of the measurement sampler."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class SamplerState:
    """
    Current state of the measurement sampler.

    Attributes:
        status: Current sampler status.
        job_id: Unique identifier for the sampling job.
        interval_seconds: Sampling interval.
        started_at: When the sampler was started.
        last_sample_at: When the last measurement was stored.
        sample_count: Number of measurements stored.
        error_count: Number of failed ticks.
        last_error: Last error message if any.
    """

    status: SamplerStatus = SamplerStatus.STOPPED
    job_id: str | None = None
    interval_seconds: float = DEFAULT_SAMPLING_INTERVAL
    started_at: datetime | None = None
    last_sample_at: datetime | None = None
    sample_count: int = 0
    error_count: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "status": self.status.value,
            "job_id": self.job_id,
            "interval_seconds": self.interval_seconds,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_sample_at": (
                self.last_sample_at.isoformat() if self.last_sample_at else None
            ),
            "sample_count": self.sample_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
        }


# =============================================================================
# Host Sampling
# =============================================================================


def sample(cpu_interval: float = DEFAULT_CPU_INTERVAL) -> tuple[float, float]:
    """
    Read CPU and RAM utilization of the host.

    Blocks for cpu_interval seconds while psutil measures CPU usage.

    Args:
        cpu_interval: Measurement window for CPU utilization.

    Returns:
        Tuple of (cpu_percent, ram_percent).

    Raises:
        SamplingError: If either metric cannot be read.
    """
    try:
        cpu = psutil.cpu_percent(interval=cpu_interval)
    except (psutil.Error, OSError) as e:
        raise SamplingError(
            f"Failed to read CPU utilization: {e}", details={"metric": "cpu"}
        ) from e

    try:
        ram = psutil.virtual_memory().percent
    except (psutil.Error, OSError) as e:
        raise SamplingError(
            f"Failed to read RAM utilization: {e}", details={"metric": "ram"}
        ) from e

    return float(cpu), float(ram)


# =============================================================================
# MeasurementSampler Class
# =============================================================================


class MeasurementSampler:
    """
    Background measurement sampler using asyncio.

    Example:
        >>> sampler = MeasurementSampler(store, config.sampler)
        >>> await sampler.start()
        >>> status = sampler.get_status()
        >>> await sampler.stop()
    """

    def __init__(
        self,
        store: MeasurementStore,
        config: SamplerConfig | None = None,
    ) -> None:
        """
        Initialize the MeasurementSampler.

        Args:
            store: MeasurementStore receiving the samples.
            config: Optional SamplerConfig for interval settings.
        """
        self._store = store
        self._state = SamplerState()
        self._cpu_interval = DEFAULT_CPU_INTERVAL
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._lock = asyncio.Lock()

        if config:
            self._state.interval_seconds = config.interval_seconds
            self._cpu_interval = config.cpu_interval_seconds

    @property
    def is_running(self) -> bool:
        """Check if the sampler is currently running."""
        return self._state.status == SamplerStatus.RUNNING

    def get_status(self) -> SamplerState:
        """Return a copy of the current SamplerState."""
        return SamplerState(
            status=self._state.status,
            job_id=self._state.job_id,
            interval_seconds=self._state.interval_seconds,
            started_at=self._state.started_at,
            last_sample_at=self._state.last_sample_at,
            sample_count=self._state.sample_count,
            error_count=self._state.error_count,
            last_error=self._state.last_error,
        )

    async def start(self) -> SamplerState:
        """
        Start the background sampling job.

        The first tick runs immediately; later ticks follow the interval.

        Returns:
            Current SamplerState after starting.

        Raises:
            FailedPreconditionError: If sampler is already running.
        """
        async with self._lock:
            if self._state.status in (SamplerStatus.RUNNING, SamplerStatus.STARTING):
                raise FailedPreconditionError(
                    "Sampler is already running",
                    details={"job_id": self._state.job_id},
                )

            self._state.status = SamplerStatus.STARTING
            self._state.job_id = str(uuid.uuid4())[:8]
            self._state.started_at = utc_now()
            self._state.sample_count = 0
            self._state.error_count = 0
            self._state.last_error = None
            self._stop_event.clear()

            self._task = asyncio.create_task(self._sampling_loop())
            self._state.status = SamplerStatus.RUNNING

            logger.info(
                "Measurement sampler started",
                extra={
                    "job_id": self._state.job_id,
                    "interval_seconds": self._state.interval_seconds,
                },
            )

            return self.get_status()

    async def stop(self) -> SamplerState:
        """
        Stop the background sampling job.

        Waits for an in-progress tick to finish, cancelling it after
        STOP_TIMEOUT_SECONDS.

        Returns:
            Current SamplerState after stopping.
        """
        async with self._lock:
            if self._state.status not in (SamplerStatus.RUNNING, SamplerStatus.STARTING):
                return self.get_status()

            self._state.status = SamplerStatus.STOPPING
            self._stop_event.set()

            if self._task:
                try:
                    await asyncio.wait_for(self._task, timeout=STOP_TIMEOUT_SECONDS)
                except TimeoutError:
                    logger.warning("Sampler task did not stop gracefully, cancelling")
                    self._task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await self._task
                self._task = None

            self._state.status = SamplerStatus.STOPPED

            logger.info(
                "Measurement sampler stopped",
                extra={
                    "job_id": self._state.job_id,
                    "sample_count": self._state.sample_count,
                },
            )

            return self.get_status()

    async def tick(self) -> Measurement | None:
        """
        Take one sample and store it.

        Failures are logged and counted, never raised.

        Returns:
            The stored Measurement, or None if the tick failed.
        """
        try:
            cpu, ram = await asyncio.get_event_loop().run_in_executor(
                None, sample, self._cpu_interval
            )
            measurement = Measurement(timestamp=utc_now(), cpu=cpu, ram=ram)
            await self._store.insert(measurement)
        except MonitorError as e:
            self._state.error_count += 1
            self._state.last_error = e.message
            logger.error(
                "Error during measurement sampling",
                extra={
                    "error": e.message,
                    "error_code": e.error_code,
                    "job_id": self._state.job_id,
                },
            )
            return None

        self._state.sample_count += 1
        self._state.last_sample_at = measurement.timestamp
        logger.debug(
            "Stored host measurement",
            extra={"id": measurement.id, "cpu": cpu, "ram": ram},
        )
        return measurement

    async def _sampling_loop(self) -> None:
        """Run ticks until the stop event is set."""
        while not self._stop_event.is_set():
            await self.tick()

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=float(self._state.interval_seconds),
                )
                break
            except TimeoutError:
                pass
