"""OtpService — the operations behind the command surface.

Wires the gatekeeper, extractor, watch controller and notification sink
together and exposes them as check / watch / stop / status.  ``serve()``
runs the health server until SIGTERM or SIGINT.
"""

from __future__ import annotations

import asyncio
import signal
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
import uvicorn

from .config import ServiceConfig
from .errors import InvalidAddressError
from .extractor import CodeExtractor
from .gatekeeper import SessionGatekeeper
from .health import create_health_app
from .logging import setup_logging
from .models import ServiceStatus, WatchRequest, WatchResult, WatchState
from .notifier import NotificationSink, build_sink
from .watcher import WatchController

logger = structlog.get_logger()


@dataclass
class _Watch:
    request: WatchRequest
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    state: WatchState = WatchState.STARTING
    task: asyncio.Task[WatchResult] | None = None

    def set_state(self, state: WatchState) -> None:
        self.state = state


class OtpService:
    """One mailbox account serving any number of concurrent requesters.

    Use as an async context manager, or call :meth:`start` and
    :meth:`aclose` yourself::

        async with OtpService(load_config()) as service:
            result = await service.check("rider@alpha.test")
    """

    def __init__(
        self,
        config: ServiceConfig,
        *,
        gatekeeper: SessionGatekeeper | None = None,
        sink: NotificationSink | None = None,
        controller: WatchController | None = None,
    ) -> None:
        self.config = config
        self.status = ServiceStatus.STARTING
        self.start_time: float = time.monotonic()

        self._gatekeeper = gatekeeper or SessionGatekeeper.from_config(
            config.imap, config.gatekeeper, config.retry
        )
        self._controller = controller or WatchController.from_config(
            self._gatekeeper, CodeExtractor(config.extractor), config.watch
        )
        self._sink = sink or build_sink(config.notifier)
        self._domains = tuple(d.lower() for d in config.watch.supported_domains)
        self._watches: dict[str, _Watch] = {}
        self._last_results: dict[str, WatchResult] = {}
        self._shutdown_event = asyncio.Event()

    async def __aenter__(self) -> OtpService:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def validate_address(self, address: str) -> str:
        """Normalise *address* and check it belongs to a supported domain.

        Returns the lower-cased address.  An empty domain list accepts any
        well-formed address.
        """
        candidate = (address or "").strip().lower()
        local, sep, domain = candidate.rpartition("@")
        if not sep or not local or not domain or " " in candidate:
            raise InvalidAddressError(f"Not an email address: {address!r}")
        if self._domains and domain not in self._domains:
            raise InvalidAddressError(
                f"Domain {domain!r} is not supported; use one of: {', '.join(self._domains)}"
            )
        return candidate

    async def check(self, address: str) -> WatchResult:
        """One-shot look for a code that already arrived."""
        target = self.validate_address(address)
        watch_config = self.config.watch
        request = WatchRequest(
            target_address=target,
            poll_interval_seconds=watch_config.poll_interval_seconds,
            lookback_seconds=watch_config.check_lookback_hours * 3600,
            max_polls=0,
        )
        logger.info("check_started", target=target)
        result = await self._controller.run(request)
        self._last_results[target] = result
        await self._sink.deliver(result)
        return result

    def start_watch(self, address: str, timeout_seconds: float | None = None) -> WatchRequest:
        """Start watching *address* in the background.

        A running watch for the same address is cancelled and replaced.
        """
        target = self.validate_address(address)
        watch_config = self.config.watch
        timeout = timeout_seconds if timeout_seconds is not None else watch_config.default_timeout_seconds
        deadline = datetime.now(UTC) + timedelta(seconds=timeout) if timeout else None
        request = WatchRequest(
            target_address=target,
            deadline=deadline,
            poll_interval_seconds=watch_config.poll_interval_seconds,
            lookback_seconds=watch_config.recent_window_seconds,
        )

        previous = self._watches.get(target)
        if previous is not None:
            previous.cancel.set()
            logger.info("watch_replaced", target=target)

        watch = _Watch(request)
        watch.task = asyncio.create_task(self._run_watch(watch), name=f"watch:{target}")
        self._watches[target] = watch
        logger.info("watch_started", target=target, timeout_seconds=timeout)
        return request

    async def wait_for(self, address: str) -> WatchResult:
        """Wait for the running watch on *address*, or return its last result.

        Raises :class:`KeyError` when *address* was never watched.
        """
        target = address.strip().lower()
        watch = self._watches.get(target)
        if watch is not None and watch.task is not None:
            return await asyncio.shield(watch.task)
        return self._last_results[target]

    def stop_watch(self, address: str | None = None) -> list[str]:
        """Cancel the watch on *address*, or every watch when omitted.

        Returns the addresses whose watches were signalled.
        """
        if address is None:
            targets = list(self._watches)
        else:
            target = address.strip().lower()
            targets = [target] if target in self._watches else []
        for target in targets:
            self._watches[target].cancel.set()
        if targets:
            logger.info("watches_stopped", targets=targets)
        return targets

    def snapshot(self) -> dict[str, Any]:
        """Mailbox session state, active watches and supported domains."""
        return {
            "service": self.config.name,
            "status": self.status.value,
            "mailbox": self._gatekeeper.status(),
            "watches": {target: w.state.value for target, w in self._watches.items()},
            "supported_domains": list(self._domains),
        }

    async def _run_watch(self, watch: _Watch) -> WatchResult:
        target = watch.request.target_address
        assert target is not None
        try:
            result = await self._controller.run(watch.request, watch.cancel, on_state=watch.set_state)
        finally:
            if self._watches.get(target) is watch:
                del self._watches[target]
        self._last_results[target] = result
        await self._sink.deliver(result)
        return result

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self._sink.start()
        self.start_time = time.monotonic()
        self.status = ServiceStatus.RUNNING
        logger.info(
            "service_started",
            service=self.config.name,
            supported_domains=list(self._domains),
        )

    async def aclose(self) -> None:
        """Stop every watch, close the mailbox session and the sink."""
        if self.status is ServiceStatus.STOPPED:
            return
        self.status = ServiceStatus.STOPPING
        self.stop_watch()
        tasks = [w.task for w in self._watches.values() if w.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._gatekeeper.aclose()
        await self._sink.stop()
        self.status = ServiceStatus.STOPPED
        logger.info("service_stopped", service=self.config.name)

    def shutdown(self) -> None:
        """Ask a running :meth:`serve` to return."""
        self._shutdown_event.set()

    def install_signal_handlers(self) -> None:
        """Route SIGTERM and SIGINT to :meth:`shutdown`.

        Call once from the running event loop.
        """
        loop = asyncio.get_running_loop()

        def _handle(sig: signal.Signals) -> None:
            logger.info("shutdown_signal_received", signal=sig.name)
            self.shutdown()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, _handle, sig)

    async def _run_health_server(self) -> None:
        app = create_health_app(self)
        config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=self.config.health_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)

        serve_task = asyncio.create_task(server.serve())
        await self._shutdown_event.wait()
        server.should_exit = True
        await serve_task

    async def _stop_watches_on_shutdown(self) -> None:
        await self._shutdown_event.wait()
        self.status = ServiceStatus.STOPPING
        self.stop_watch()

    async def serve(self) -> None:
        """Run the health server until shutdown, then close everything.

        Entry point for long-running deployments::

            asyncio.run(OtpService(load_config()).serve())
        """
        setup_logging(json=self.config.log_json, level=self.config.log_level)
        self.install_signal_handlers()
        await self.start()

        try:
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self._run_health_server())
                tg.create_task(self._stop_watches_on_shutdown())
        except* Exception:
            logger.exception("service_task_group_error", service=self.config.name)
        finally:
            await self.aclose()
