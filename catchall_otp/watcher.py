"""WatchController — drives one watch request to a terminal state.

A request first drains messages that arrived shortly before it was made,
then polls for new ones until a code turns up, the deadline passes, the
poll budget runs out or the caller cancels.  The mailbox session is held
for one search/fetch cycle at a time, never across a sleep, so concurrent
requests take turns through the gatekeeper queue.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta

import structlog

from .config import WatchConfig
from .errors import FetchError, MailboxConnectionError, SearchError
from .extractor import CodeExtractor
from .gatekeeper import SessionGatekeeper, SessionHandle
from .models import CandidateCode, SearchCriteria, WatchRequest, WatchResult, WatchState
from .parser import ParsedMessage

logger = structlog.get_logger()

StateCallback = Callable[[WatchState], None]

_OLDEST = datetime.min.replace(tzinfo=UTC)


class WatchController:
    """Runs watch requests against a shared :class:`SessionGatekeeper`."""

    def __init__(
        self,
        gatekeeper: SessionGatekeeper,
        extractor: CodeExtractor,
        *,
        domains: Sequence[str] = (),
        fetch_limit: int = 3,
        date_slack_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._gatekeeper = gatekeeper
        self._extractor = extractor
        self._domains = tuple(d.lower() for d in domains)
        self._fetch_limit = fetch_limit
        self._slack = timedelta(seconds=date_slack_seconds)
        self._clock = clock
        self._now = now or (lambda: datetime.now(UTC))

    @classmethod
    def from_config(
        cls,
        gatekeeper: SessionGatekeeper,
        extractor: CodeExtractor,
        config: WatchConfig,
    ) -> WatchController:
        return cls(
            gatekeeper,
            extractor,
            domains=config.supported_domains,
            fetch_limit=config.fetch_limit,
            date_slack_seconds=config.date_slack_seconds,
        )

    async def run(
        self,
        request: WatchRequest,
        cancel: asyncio.Event | None = None,
        on_state: StateCallback | None = None,
    ) -> WatchResult:
        """Execute *request* and return its terminal :class:`WatchResult`.

        Setting *cancel* ends the request without waiting for the current
        sleep or for a turn at the session.  Cancelling the task itself
        propagates ``CancelledError`` once the session has been released.
        """
        cancel = cancel or asyncio.Event()
        started = self._clock()
        start_at = self._now()
        deadline = _as_utc(request.deadline)
        cycles = 0

        def enter(state: WatchState) -> None:
            logger.debug("watch_state", target=request.target_address, state=state.value)
            if on_state is not None:
                on_state(state)

        def finish(
            state: WatchState,
            code: CandidateCode | None = None,
            error: str | None = None,
        ) -> WatchResult:
            enter(state)
            result = WatchResult(
                state=state,
                target_address=request.target_address,
                code=code,
                elapsed_seconds=self._clock() - started,
                cycles=cycles,
                error=error,
            )
            logger.info(
                "watch_finished",
                target=request.target_address,
                state=state.value,
                cycles=cycles,
                elapsed_seconds=round(result.elapsed_seconds, 3),
                match_tier=code.match_tier.value if code else None,
            )
            return result

        enter(WatchState.STARTING)
        if self._expired(deadline):
            return finish(WatchState.TIMED_OUT)
        if cancel.is_set():
            return finish(WatchState.CANCELLED)

        try:
            enter(WatchState.DRAINING_EXISTING)
            cycles += 1
            lookback = timedelta(seconds=request.lookback_seconds)
            code = await self._cycle(request, start_at - lookback, cancel)
            if code is not None:
                return finish(WatchState.FOUND, code)
            if cancel.is_set():
                return finish(WatchState.CANCELLED)

            enter(WatchState.POLLING)
            since = start_at
            polls = 0
            while request.max_polls is None or polls < request.max_polls:
                if cancel.is_set():
                    return finish(WatchState.CANCELLED)
                remaining = self._remaining(deadline)
                if remaining is not None and remaining <= 0:
                    return finish(WatchState.TIMED_OUT)

                interval = request.poll_interval_seconds
                if remaining is not None:
                    interval = min(interval, remaining)
                if await _wait(cancel, interval):
                    return finish(WatchState.CANCELLED)
                if self._expired(deadline):
                    return finish(WatchState.TIMED_OUT)

                polls += 1
                cycles += 1
                code = await self._cycle(request, since, cancel)
                if code is not None:
                    return finish(WatchState.FOUND, code)
                since = self._now()
        except (SearchError, FetchError, MailboxConnectionError) as exc:
            logger.warning(
                "watch_cycle_failed",
                target=request.target_address,
                error_code=exc.code,
                error=str(exc),
            )
            return finish(WatchState.FAILED, error=f"{exc.code}: {exc}")

        if cancel.is_set():
            return finish(WatchState.CANCELLED)
        return finish(WatchState.TIMED_OUT)

    async def _cycle(
        self, request: WatchRequest, since: datetime, cancel: asyncio.Event
    ) -> CandidateCode | None:
        """One search/fetch/extract pass over messages at or after *since*."""
        criteria = SearchCriteria(
            recipient=request.target_address,
            domains=() if request.target_address else self._domains,
            since=since,
        )
        handle = await self._acquire(cancel)
        if handle is None:
            return None
        async with self._gatekeeper.holding(handle):
            uids = await handle.search(criteria)
            messages = await handle.fetch(uids, limit=self._fetch_limit) if uids else []

        for message in self._recent_first(messages, since):
            candidate = self._extractor.extract(message, request.target_address)
            if candidate is not None:
                return candidate
        return None

    async def _acquire(self, cancel: asyncio.Event) -> SessionHandle | None:
        """Wait for the session; give up and return None once *cancel* is set."""
        acquiring = asyncio.ensure_future(self._gatekeeper.acquire())
        stopping = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({acquiring, stopping}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            _abandon(acquiring)
            raise
        finally:
            stopping.cancel()
        if cancel.is_set():
            _abandon(acquiring)
            return None
        return acquiring.result()

    def _recent_first(
        self, messages: Sequence[ParsedMessage], since: datetime
    ) -> list[ParsedMessage]:
        # SEARCH SINCE is day-granular; undated messages are kept
        floor = since - self._slack
        fresh = [m for m in messages if m.arrival is None or m.arrival >= floor]
        return sorted(fresh, key=lambda m: m.arrival or _OLDEST, reverse=True)

    def _remaining(self, deadline: datetime | None) -> float | None:
        if deadline is None:
            return None
        return (deadline - self._now()).total_seconds()

    def _expired(self, deadline: datetime | None) -> bool:
        remaining = self._remaining(deadline)
        return remaining is not None and remaining <= 0


async def _wait(cancel: asyncio.Event, seconds: float) -> bool:
    """Sleep up to *seconds*; return True as soon as *cancel* is set."""
    if seconds <= 0:
        return cancel.is_set()
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
    except TimeoutError:
        return False
    return True


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _abandon(acquiring: asyncio.Future[SessionHandle]) -> None:
    if acquiring.done():
        _release_unused(acquiring)
    else:
        acquiring.cancel()
        acquiring.add_done_callback(_release_unused)


def _release_unused(acquiring: asyncio.Future[SessionHandle]) -> None:
    # The turn may have been granted just before the cancel landed
    if acquiring.cancelled() or acquiring.exception() is not None:
        return
    acquiring.result().release()
