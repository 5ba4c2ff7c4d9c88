"""
Process supervisor for the resource monitor.

MonitorService owns the three concurrent activities of the process:
- the measurement sampler loop
- the MQTT subscriber loop
- the uvicorn HTTP server

Startup is fail-fast: the store must be reachable, the subscription must
become active and the HTTP server must bind, otherwise everything already
started is stopped and the error propagates. Shutdown is triggered by
request_stop() (wired to SIGINT/SIGTERM by run_service) or by any activity
ending on its own.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import uvicorn

from resource_monitor.api import create_app
from resource_monitor.bus.subscriber import MeasurementSubscriber
from resource_monitor.errors import ConnectivityError, MonitorError
from resource_monitor.logging import get_logger
from resource_monitor.metrics.sampler import MeasurementSampler
from resource_monitor.metrics.storage import MeasurementStore

if TYPE_CHECKING:
    from fastapi import FastAPI

    from resource_monitor.config import AppConfig

logger = get_logger(__name__)

# Poll interval while waiting for the HTTP server to bind
HTTP_STARTUP_POLL_SECONDS = 0.05


class MonitorService:
    """
    Supervisor for the sampler, subscriber and HTTP server.

    Components may be injected; otherwise they are built from the config
    around one shared MeasurementStore.

    Example:
        >>> service = MonitorService(load_config())
        >>> await service.run()  # until request_stop() or a fatal error

    Attributes:
        config: Application configuration.
        store: Shared MeasurementStore.
        sampler: Host measurement sampler.
        subscriber: MQTT measurement subscriber.
        app: FastAPI application.
        running: Whether all activities have been started.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        store: MeasurementStore | None = None,
        sampler: MeasurementSampler | None = None,
        subscriber: MeasurementSubscriber | None = None,
        app: FastAPI | None = None,
    ) -> None:
        self.config = config
        self.store = store or MeasurementStore.from_config(config.store)
        self.sampler = sampler or MeasurementSampler(self.store, config.sampler)
        self.subscriber = subscriber or MeasurementSubscriber(self.store, config.bus)
        self.app = app or create_app(self.store)
        self.running = False
        self._http: uvicorn.Server | None = None
        self._http_task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    def _create_http_server(self) -> uvicorn.Server:
        """Build the uvicorn server for the API."""
        server_config = uvicorn.Config(
            self.app,
            host=self.config.server.host,
            port=self.config.server.port,
            log_level=self.config.server.log_level,
            log_config=None,
            timeout_graceful_shutdown=int(self.config.store.timeout_seconds),
        )
        return uvicorn.Server(server_config)

    async def start(self) -> None:
        """
        Start every activity.

        Raises:
            ConnectivityError: If the store or the bus is unreachable, or the
                HTTP server fails to start.
        """
        try:
            await self.store.initialize()
            await self.subscriber.start()
            await self.sampler.start()
            await self._start_http()
        except BaseException:
            await self.stop()
            raise

        self.running = True
        logger.info(
            "Resource monitor started",
            extra={
                "listen": self.config.server.listen,
                "topic": self.config.bus.topic,
                "interval_seconds": self.config.sampler.interval_seconds,
            },
        )

    async def _start_http(self) -> None:
        """Start the HTTP server and wait until it is listening."""
        self._http = self._create_http_server()
        self._http_task = asyncio.create_task(self._serve_http(self._http))

        while not self._http.started:
            if self._http_task.done():
                # Surface the startup exception if there is one
                self._http_task.result()
                raise ConnectivityError(
                    "HTTP server exited during startup",
                    details={"listen": self.config.server.listen},
                )
            await asyncio.sleep(HTTP_STARTUP_POLL_SECONDS)

        logger.info("HTTP server listening", extra={"listen": self.config.server.listen})

    async def _serve_http(self, server: uvicorn.Server) -> None:
        """Run the HTTP server, reporting a failed bind as ConnectivityError."""
        try:
            await server.serve()
        except SystemExit as e:
            # uvicorn exits the process when it cannot bind
            raise ConnectivityError(
                "HTTP server failed to start",
                details={"listen": self.config.server.listen},
            ) from e

    def request_stop(self) -> None:
        """Ask run() to shut the service down."""
        self._stop_event.set()

    async def wait(self) -> None:
        """
        Wait until a stop is requested or an activity ends.

        Raises:
            MonitorError: If an activity ended with an error.
        """
        stop_waiter = asyncio.create_task(self._stop_event.wait())
        watched: set[asyncio.Future[Any]] = {stop_waiter}
        if self._http_task is not None:
            watched.add(self._http_task)
        if self.subscriber.task is not None:
            watched.add(self.subscriber.task)

        try:
            done, _ = await asyncio.wait(watched, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_waiter.cancel()

        for task in done:
            if task is stop_waiter or task.cancelled():
                continue
            error = task.exception()
            if error is not None:
                logger.error(
                    "Activity failed, shutting down",
                    extra={"error": str(error)},
                )
                raise error
            if task is self._http_task and self._http_stop_requested():
                # uvicorn captures SIGINT/SIGTERM itself and exits cleanly
                logger.info("HTTP server stopped on request, shutting down")
                continue
            logger.warning("Activity ended unexpectedly, shutting down")

    def _http_stop_requested(self) -> bool:
        """Whether the HTTP server was asked to exit."""
        if self._stop_event.is_set():
            return True
        return self._http is not None and bool(self._http.should_exit)

    async def run(self) -> None:
        """Start, wait for a stop request or failure, then stop."""
        await self.start()
        try:
            await self.wait()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """
        Stop every activity.

        The HTTP server drains in-flight requests first, then the sampler
        timer and the subscription are stopped and the store is closed.
        """
        if self._http is not None:
            self._http.should_exit = True
        if self._http_task is not None:
            try:
                await self._http_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(
                    "HTTP server exited with error",
                    extra={"error": str(e)},
                )
        self._http = None
        self._http_task = None

        await self.sampler.stop()
        await self.subscriber.stop()
        await self.store.close()

        if self.running:
            logger.info("Resource monitor stopped")
        self.running = False


async def run_service(config: AppConfig) -> None:
    """
    Run the resource monitor until SIGINT/SIGTERM or a fatal error.

    Args:
        config: Application configuration.

    Raises:
        MonitorError: If startup fails or an activity fails.
    """
    service = MonitorService(config)

    loop = asyncio.get_event_loop()

    def signal_handler() -> None:
        logger.info("Received shutdown signal")
        service.request_stop()

    try:
        import signal

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)
    except (ValueError, NotImplementedError):
        # Signal handling not supported on this platform
        pass

    try:
        await service.run()
    except MonitorError as e:
        logger.error(
            "Resource monitor terminated",
            extra={"error": e.message, "error_code": e.error_code},
        )
        raise
