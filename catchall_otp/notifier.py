"""Notification sinks: where finished watch results are handed off."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import httpx
import structlog

from .config import NotifierConfig
from .models import WatchResult

logger = structlog.get_logger()


@runtime_checkable
class NotificationSink(Protocol):
    """Receives every terminal :class:`WatchResult` produced by the service.

    Implementations must not raise; a failed delivery is the sink's problem.
    """

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def deliver(self, result: WatchResult) -> None: ...


class LogNotificationSink:
    """Writes results to the structured log."""

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    async def deliver(self, result: WatchResult) -> None:
        logger.info(
            "watch_result",
            target=result.target_address,
            state=result.state.value,
            code=result.code.value if result.code else None,
            message=result.message,
        )


class WebhookNotificationSink:
    """POSTs each result as JSON to a configured URL."""

    def __init__(self, config: NotifierConfig) -> None:
        if not config.webhook_url:
            raise ValueError("WebhookNotificationSink requires a webhook_url")
        self._config = config
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self._config.timeout_seconds),
        )
        logger.info("webhook_sink_started", url=self._config.webhook_url)

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("webhook_sink_stopped")

    async def deliver(self, result: WatchResult) -> None:
        if self._client is None:
            raise AssertionError("Sink not started")
        try:
            response = await self._client.post(
                self._config.webhook_url,
                content=result.model_dump_json(),
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "webhook_delivery_failed",
                target=result.target_address,
                state=result.state.value,
                error=str(exc),
            )
            return
        logger.info(
            "webhook_delivered",
            target=result.target_address,
            state=result.state.value,
            status_code=response.status_code,
        )


def build_sink(config: NotifierConfig) -> NotificationSink:
    """Webhook sink when a URL is configured, log sink otherwise."""
    if config.webhook_url:
        return WebhookNotificationSink(config)
    return LogNotificationSink()
