"""
Tests for the process supervisor.

This test module validates:
- Startup order (store, subscriber, sampler, HTTP server)
- Fail-fast startup: already-started activities are stopped on failure
- Running until a stop is requested or an activity fails
- HTTP server construction from configuration
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import uvicorn

from resource_monitor.config import AppConfig
from resource_monitor.errors import ConnectivityError
from resource_monitor.server import MonitorService

# =============================================================================
# Fakes and Fixtures
# =============================================================================


class FakeHTTPServer:
    """Stand-in for uvicorn.Server."""

    def __init__(
        self,
        *,
        fail_with: BaseException | None = None,
        return_after: float | None = None,
    ) -> None:
        self.started = False
        self.should_exit = False
        self.fail_with = fail_with
        self.return_after = return_after

    async def serve(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.started = True
        if self.return_after is not None:
            # Returns on its own without being asked to exit
            await asyncio.sleep(self.return_after)
            return
        while not self.should_exit:
            await asyncio.sleep(0.01)


@pytest.fixture
def config() -> AppConfig:
    """Application config for the service."""
    return AppConfig()


@pytest.fixture
def calls() -> list[str]:
    """Records component calls in order."""
    return []


@pytest.fixture
def components(calls: list[str]) -> dict[str, MagicMock]:
    """Mocked store, sampler and subscriber recording their calls."""

    def _recorder(name: str) -> AsyncMock:
        return AsyncMock(side_effect=lambda *args, **kwargs: calls.append(name))

    store = MagicMock()
    store.initialize = _recorder("store.initialize")
    store.close = _recorder("store.close")

    subscriber = MagicMock()
    subscriber.start = _recorder("subscriber.start")
    subscriber.stop = _recorder("subscriber.stop")
    subscriber.task = None

    sampler = MagicMock()
    sampler.start = _recorder("sampler.start")
    sampler.stop = _recorder("sampler.stop")

    return {"store": store, "subscriber": subscriber, "sampler": sampler}


def _service(config: AppConfig, components: dict[str, MagicMock]) -> MonitorService:
    return MonitorService(config, app=MagicMock(), **components)


# =============================================================================
# Tests for Startup
# =============================================================================


class TestStartup:
    """Tests for MonitorService.start."""

    @pytest.mark.asyncio
    async def test_start_order(
        self,
        config: AppConfig,
        components: dict[str, MagicMock],
        calls: list[str],
    ) -> None:
        service = _service(config, components)
        http = FakeHTTPServer()

        with patch.object(MonitorService, "_create_http_server", return_value=http):
            await service.start()
            try:
                assert service.running
                assert http.started
                assert calls == ["store.initialize", "subscriber.start", "sampler.start"]
            finally:
                await service.stop()

        assert http.should_exit
        assert not service.running
        assert calls[3:] == ["sampler.stop", "subscriber.stop", "store.close"]

    @pytest.mark.asyncio
    async def test_store_unreachable(
        self,
        config: AppConfig,
        components: dict[str, MagicMock],
        calls: list[str],
    ) -> None:
        components["store"].initialize = AsyncMock(
            side_effect=ConnectivityError("Store unreachable")
        )
        service = _service(config, components)

        with pytest.raises(ConnectivityError, match="Store unreachable"):
            await service.start()

        components["subscriber"].start.assert_not_awaited()
        components["sampler"].start.assert_not_awaited()
        assert calls == ["sampler.stop", "subscriber.stop", "store.close"]
        assert not service.running

    @pytest.mark.asyncio
    async def test_bus_unreachable(
        self,
        config: AppConfig,
        components: dict[str, MagicMock],
        calls: list[str],
    ) -> None:
        components["subscriber"].start = AsyncMock(
            side_effect=ConnectivityError("Message bus unavailable")
        )
        service = _service(config, components)

        with pytest.raises(ConnectivityError, match="Message bus unavailable"):
            await service.start()

        components["sampler"].start.assert_not_awaited()
        assert "store.close" in calls

    @pytest.mark.asyncio
    async def test_http_bind_failure(
        self,
        config: AppConfig,
        components: dict[str, MagicMock],
        calls: list[str],
    ) -> None:
        service = _service(config, components)
        http = FakeHTTPServer(fail_with=SystemExit(1))

        with patch.object(MonitorService, "_create_http_server", return_value=http):
            with pytest.raises(ConnectivityError, match="HTTP server failed to start"):
                await service.start()

        assert calls[-3:] == ["sampler.stop", "subscriber.stop", "store.close"]
        assert not service.running


# =============================================================================
# Tests for Run / Wait
# =============================================================================


class TestRun:
    """Tests for MonitorService.run and wait."""

    @pytest.mark.asyncio
    async def test_run_until_stop_requested(
        self,
        config: AppConfig,
        components: dict[str, MagicMock],
        calls: list[str],
    ) -> None:
        service = _service(config, components)
        http = FakeHTTPServer()

        with patch.object(MonitorService, "_create_http_server", return_value=http):
            run_task = asyncio.create_task(service.run())
            for _ in range(200):
                if service.running:
                    break
                await asyncio.sleep(0.01)

            service.request_stop()
            await asyncio.wait_for(run_task, timeout=5)

        assert http.should_exit
        assert calls[-3:] == ["sampler.stop", "subscriber.stop", "store.close"]

    @pytest.mark.asyncio
    async def test_subscriber_failure_stops_service(
        self,
        config: AppConfig,
        components: dict[str, MagicMock],
        calls: list[str],
    ) -> None:
        async def _lose_broker() -> None:
            await asyncio.sleep(0.05)
            raise ConnectivityError("Message bus unavailable")

        subscriber_task = asyncio.create_task(_lose_broker())
        components["subscriber"].task = subscriber_task
        service = _service(config, components)

        with patch.object(
            MonitorService, "_create_http_server", return_value=FakeHTTPServer()
        ):
            with pytest.raises(ConnectivityError, match="Message bus unavailable"):
                await asyncio.wait_for(service.run(), timeout=5)

        assert calls[-3:] == ["sampler.stop", "subscriber.stop", "store.close"]

    @pytest.mark.asyncio
    async def test_http_exit_stops_service(
        self,
        config: AppConfig,
        components: dict[str, MagicMock],
    ) -> None:
        service = _service(config, components)
        http = FakeHTTPServer()

        with patch.object(MonitorService, "_create_http_server", return_value=http):
            run_task = asyncio.create_task(service.run())
            for _ in range(200):
                if service.running:
                    break
                await asyncio.sleep(0.01)

            # What uvicorn does when it captures SIGINT/SIGTERM itself
            with patch("resource_monitor.server.logger") as mock_logger:
                http.should_exit = True
                await asyncio.wait_for(run_task, timeout=5)

        assert not service.running
        mock_logger.warning.assert_not_called()
        mock_logger.info.assert_any_call("HTTP server stopped on request, shutting down")

    @pytest.mark.asyncio
    async def test_http_exit_after_stop_request_is_not_unexpected(
        self,
        config: AppConfig,
        components: dict[str, MagicMock],
    ) -> None:
        service = _service(config, components)
        http = FakeHTTPServer()

        with patch.object(MonitorService, "_create_http_server", return_value=http):
            await service.start()
            service.request_stop()
            http.should_exit = True
            await asyncio.sleep(0.05)

            with patch("resource_monitor.server.logger") as mock_logger:
                await asyncio.wait_for(service.wait(), timeout=5)
            await service.stop()

        mock_logger.warning.assert_not_called()

    @pytest.mark.asyncio
    async def test_http_unrequested_exit_is_unexpected(
        self,
        config: AppConfig,
        components: dict[str, MagicMock],
        calls: list[str],
    ) -> None:
        service = _service(config, components)
        http = FakeHTTPServer(return_after=0.05)

        with patch.object(MonitorService, "_create_http_server", return_value=http):
            with patch("resource_monitor.server.logger") as mock_logger:
                await asyncio.wait_for(service.run(), timeout=5)

        mock_logger.warning.assert_called_once_with(
            "Activity ended unexpectedly, shutting down"
        )
        assert calls[-3:] == ["sampler.stop", "subscriber.stop", "store.close"]


# =============================================================================
# Tests for HTTP Server Construction
# =============================================================================


class TestCreateHttpServer:
    """Tests for _create_http_server."""

    def test_uses_listen_address(self, components: dict[str, MagicMock]) -> None:
        config = AppConfig(server={"listen": "127.0.0.1:9090", "log_level": "debug"})
        service = _service(config, components)

        server = service._create_http_server()

        assert isinstance(server, uvicorn.Server)
        assert server.config.host == "127.0.0.1"
        assert server.config.port == 9090
        assert server.config.timeout_graceful_shutdown == 10
