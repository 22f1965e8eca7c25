"""Tests for catchall_otp.service."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from catchall_otp.config import ServiceConfig
from catchall_otp.errors import InvalidAddressError
from catchall_otp.gatekeeper import SessionGatekeeper
from catchall_otp.models import ServiceStatus, WatchState
from catchall_otp.service import OtpService


@pytest.fixture
def sink() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def service(service_config: ServiceConfig, mailbox, sink: AsyncMock) -> OtpService:
    gatekeeper = SessionGatekeeper(
        service_config.gatekeeper, mailbox.open_session, retry=service_config.retry
    )
    return OtpService(service_config, gatekeeper=gatekeeper, sink=sink)


class TestValidateAddress:
    def test_supported_domain(self, service: OtpService):
        assert service.validate_address("  Rider@Alpha.Test ") == "rider@alpha.test"

    @pytest.mark.parametrize("address", ["", "rider", "@alpha.test", "rider@", "a b@alpha.test"])
    def test_malformed(self, service: OtpService, address: str):
        with pytest.raises(InvalidAddressError):
            service.validate_address(address)

    def test_unsupported_domain(self, service: OtpService):
        with pytest.raises(InvalidAddressError, match="alpha.test, beta.test"):
            service.validate_address("rider@gamma.test")

    def test_no_domains_configured_accepts_any(self, service_config: ServiceConfig, sink):
        service_config.watch.supported_domains = []
        service = OtpService(service_config, sink=sink)
        assert service.validate_address("rider@gamma.test") == "rider@gamma.test"


class TestCheck:
    @pytest.mark.asyncio
    async def test_check_finds_recent_code(
        self, service: OtpService, mailbox, sink: AsyncMock, make_message
    ):
        # Hours old: outside a watch window, inside the check lookback
        mailbox.deliver(make_message(body="Your code: 5150", age_seconds=3 * 3600))

        async with service:
            result = await service.check("rider@alpha.test")

        assert result.state is WatchState.FOUND
        assert result.code is not None
        assert result.code.value == "5150"
        sink.deliver.assert_awaited_once_with(result)

    @pytest.mark.asyncio
    async def test_check_without_code(self, service: OtpService, mailbox, sink: AsyncMock):
        async with service:
            result = await service.check("rider@alpha.test")
        assert result.state is WatchState.TIMED_OUT
        assert result.cycles == 1
        assert len(mailbox.searches) == 1

    @pytest.mark.asyncio
    async def test_check_rejects_invalid_address(self, service: OtpService, mailbox):
        async with service:
            with pytest.raises(InvalidAddressError):
                await service.check("rider@gamma.test")
        assert mailbox.connect_times == []


class TestWatch:
    @pytest.mark.asyncio
    async def test_watch_until_found(
        self, service: OtpService, mailbox, sink: AsyncMock, make_message
    ):
        async with service:
            service.start_watch("rider@alpha.test", timeout_seconds=5)
            await asyncio.sleep(0.05)
            assert service.snapshot()["watches"]["rider@alpha.test"] == "polling"

            mailbox.deliver(make_message(body="Your code: 9090"))
            result = await service.wait_for("rider@alpha.test")

        assert result.state is WatchState.FOUND
        assert result.code is not None
        assert result.code.value == "9090"
        sink.deliver.assert_awaited_once_with(result)

    @pytest.mark.asyncio
    async def test_watch_timeout(self, service: OtpService):
        async with service:
            service.start_watch("rider@alpha.test", timeout_seconds=0.1)
            result = await service.wait_for("rider@alpha.test")
        assert result.state is WatchState.TIMED_OUT

    @pytest.mark.asyncio
    async def test_wait_for_returns_last_result(self, service: OtpService):
        async with service:
            service.start_watch("rider@alpha.test", timeout_seconds=0.05)
            first = await service.wait_for("rider@alpha.test")
            again = await service.wait_for("rider@alpha.test")
        assert again is first

    @pytest.mark.asyncio
    async def test_wait_for_unknown_address(self, service: OtpService):
        with pytest.raises(KeyError):
            await service.wait_for("nobody@alpha.test")

    @pytest.mark.asyncio
    async def test_stop_one_watch(self, service: OtpService):
        async with service:
            service.start_watch("rider@alpha.test")
            service.start_watch("driver@beta.test")
            await asyncio.sleep(0.05)

            assert service.stop_watch("rider@alpha.test") == ["rider@alpha.test"]
            result = await service.wait_for("rider@alpha.test")
            assert result.state is WatchState.CANCELLED
            assert list(service.snapshot()["watches"]) == ["driver@beta.test"]

    @pytest.mark.asyncio
    async def test_stop_all_watches(self, service: OtpService):
        async with service:
            service.start_watch("rider@alpha.test")
            service.start_watch("driver@beta.test")
            await asyncio.sleep(0.05)

            stopped = service.stop_watch()
            assert sorted(stopped) == ["driver@beta.test", "rider@alpha.test"]
            for address in stopped:
                assert (await service.wait_for(address)).state is WatchState.CANCELLED

    @pytest.mark.asyncio
    async def test_stop_unknown_watch(self, service: OtpService):
        assert service.stop_watch("nobody@alpha.test") == []

    @pytest.mark.asyncio
    async def test_restarting_replaces_watch(self, service: OtpService, sink: AsyncMock):
        async with service:
            service.start_watch("rider@alpha.test")
            await asyncio.sleep(0.05)
            service.start_watch("rider@alpha.test", timeout_seconds=0.05)
            result = await service.wait_for("rider@alpha.test")
            await asyncio.sleep(0.05)

        assert result.state is WatchState.TIMED_OUT
        states = sorted(call.args[0].state.value for call in sink.deliver.await_args_list)
        assert states == ["cancelled", "timed_out"]

    @pytest.mark.asyncio
    async def test_concurrent_watches_share_one_connection(
        self, service: OtpService, mailbox, make_message
    ):
        async with service:
            for name in ("a", "b", "c"):
                service.start_watch(f"{name}@alpha.test", timeout_seconds=5)
            await asyncio.sleep(0.05)
            for name, code in (("a", "4001"), ("b", "4002"), ("c", "4003")):
                mailbox.deliver(make_message(to_addr=f"{name}@alpha.test", body=f"Your code: {code}"))
            results = [await service.wait_for(f"{name}@alpha.test") for name in ("a", "b", "c")]

        assert all(r.state is WatchState.FOUND for r in results)
        assert len(mailbox.connect_times) == 1
        assert mailbox.max_open == 1


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_aclose_stops_watches_and_closes_session(
        self, service: OtpService, mailbox, sink: AsyncMock
    ):
        await service.start()
        assert service.status is ServiceStatus.RUNNING
        service.start_watch("rider@alpha.test")
        await asyncio.sleep(0.05)

        await service.aclose()

        assert service.status is ServiceStatus.STOPPED
        assert service.snapshot()["watches"] == {}
        assert mailbox.open == 0
        sink.start.assert_awaited_once()
        sink.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_snapshot(self, service: OtpService):
        snapshot = service.snapshot()
        assert snapshot["service"] == "otp-test"
        assert snapshot["status"] == "starting"
        assert snapshot["mailbox"]["state"] == "idle"
        assert snapshot["supported_domains"] == ["alpha.test", "beta.test"]

    @pytest.mark.asyncio
    async def test_serve_runs_until_shutdown(self, service: OtpService):
        with (
            patch("catchall_otp.service.uvicorn.Server") as MockServer,
            patch("catchall_otp.service.setup_logging"),
            patch.object(service, "install_signal_handlers"),
        ):
            MockServer.return_value.serve = AsyncMock()
            asyncio.get_running_loop().call_later(0.05, service.shutdown)
            await asyncio.wait_for(service.serve(), timeout=2.0)

        assert service.status is ServiceStatus.STOPPED
        assert MockServer.return_value.should_exit is True
