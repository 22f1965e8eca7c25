"""SessionGatekeeper — the only owner of the mailbox connection.

The mail store allows a handful of simultaneous connections per account
and punishes fast reconnects, so every watch request funnels through one
gatekeeper:

* at most one connection is open, and at most one caller holds it;
* a new connection is never opened within ``cooldown_seconds`` of the
  previous attempt, or before a connection-limit backoff has expired;
* callers that arrive while a connection attempt is running wait for that
  same attempt and all see its outcome;
* callers waiting to use the open session are served first-come,
  first-served.
* a session left idle is checked with NOOP before it is handed out, and
  replaced if the server has dropped it.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from typing import Any

import structlog

from .config import GatekeeperConfig, ImapConfig, RetryConfig
from .errors import (
    AuthenticationError,
    ConnectionLimitError,
    FetchError,
    MailboxConnectionError,
    SearchError,
    SessionReleasedError,
)
from .imap_client import MailboxSession
from .models import SearchCriteria, SessionState
from .parser import ParsedMessage
from .retry import with_retry

logger = structlog.get_logger()

SessionFactory = Callable[[], MailboxSession]


class SessionHandle:
    """Proof of ownership of the mailbox session.

    Exposes search and fetch while held; any use after release raises
    :class:`SessionReleasedError`.
    """

    def __init__(self, gatekeeper: SessionGatekeeper, session: MailboxSession, handle_id: int):
        self._gatekeeper = gatekeeper
        self._session = session
        self.handle_id = handle_id
        self.released = False

    def _require_held(self) -> MailboxSession:
        if self.released:
            raise SessionReleasedError(f"Session handle {self.handle_id} was already released")
        return self._session

    async def search(self, criteria: SearchCriteria) -> list[str]:
        return await self._require_held().search(criteria)

    async def fetch(self, uids: Sequence[str], *, limit: int = 3) -> list[ParsedMessage]:
        return await self._require_held().fetch(uids, limit=limit)

    def release(self, *, discard: bool = False) -> None:
        self._gatekeeper.release(self, discard=discard)


class SessionGatekeeper:
    """Admits one caller at a time to the single mailbox session."""

    def __init__(
        self,
        config: GatekeeperConfig,
        session_factory: SessionFactory,
        *,
        retry: RetryConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._factory = session_factory
        self._retry = retry or RetryConfig()
        self._clock = clock

        self._session: MailboxSession | None = None
        self._fresh = False
        self._connecting: asyncio.Task[None] | None = None
        self._closing: set[asyncio.Task[None]] = set()
        self._last_attempt_at: float | None = None
        self._backoff_until: float = 0.0
        self._last_error: MailboxConnectionError | None = None
        self._connections_opened = 0
        self._closed = False

        # Ownership queue; same wake-up discipline as asyncio.Lock
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._owned = False
        self._holder: SessionHandle | None = None
        self._handle_seq = 0

    @classmethod
    def from_config(
        cls,
        imap: ImapConfig,
        gatekeeper: GatekeeperConfig,
        retry: RetryConfig | None = None,
    ) -> SessionGatekeeper:
        markers = gatekeeper.connection_limit_markers

        def factory() -> MailboxSession:
            return MailboxSession(imap, limit_markers=markers)

        return cls(gatekeeper, factory, retry=retry)

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    async def acquire(self) -> SessionHandle:
        """Wait for an open session and for this caller's turn to use it.

        Must be paired with :meth:`release` on every exit path; prefer
        ``async with gatekeeper.session() as handle``.
        """
        if self._closed:
            raise MailboxConnectionError("Gatekeeper is closed")

        await self._ensure_session()
        await self._take_turn()
        try:
            if self._session is not None and not self._fresh:
                await self._check_alive(self._session)
            if self._session is None:
                # Discarded by the previous owner, or dropped while idle
                await self._ensure_session()
        except BaseException:
            self._give_up_turn()
            raise

        assert self._session is not None
        self._fresh = False
        self._handle_seq += 1
        handle = SessionHandle(self, self._session, self._handle_seq)
        self._session.state = SessionState.BUSY
        self._holder = handle
        return handle

    def release(self, handle: SessionHandle, *, discard: bool = False) -> None:
        """Return ownership and wake the next queued caller.

        ``discard=True`` (after a transport error) closes the session so
        the next owner reconnects, subject to cooldown and backoff.
        Releasing twice is a no-op.
        """
        if handle.released:
            return
        handle.released = True
        if self._holder is handle:
            self._holder = None

        session = handle._session
        if session is self._session:
            if discard or session.state is SessionState.FAILED:
                self._discard_session()
            else:
                session.state = SessionState.READY
        self._give_up_turn()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[SessionHandle]:
        """Scoped acquisition: the handle is released however the block exits."""
        handle = await self.acquire()
        async with self.holding(handle):
            yield handle

    @asynccontextmanager
    async def holding(self, handle: SessionHandle) -> AsyncIterator[SessionHandle]:
        """Scope an already acquired *handle*; same release rules as :meth:`session`."""
        discard = False
        try:
            yield handle
        except (SearchError, FetchError, asyncio.CancelledError):
            # Cancelled mid-command leaves the protocol state unknown
            discard = True
            raise
        finally:
            self.release(handle, discard=discard)

    async def _take_turn(self) -> None:
        if not self._owned and all(w.cancelled() for w in self._waiters):
            self._owned = True
            return

        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            try:
                await fut
            finally:
                self._waiters.remove(fut)
        except asyncio.CancelledError:
            # Woken but cancelled before running: pass the turn on
            if not self._owned:
                self._wake_next()
            raise
        self._owned = True

    def _give_up_turn(self) -> None:
        self._owned = False
        self._wake_next()

    def _wake_next(self) -> None:
        if not self._waiters:
            return
        fut = self._waiters[0]
        if not fut.done():
            fut.set_result(None)

    # ------------------------------------------------------------------
    # Connection establishment
    # ------------------------------------------------------------------

    async def _ensure_session(self) -> None:
        if self._session is not None:
            return
        if self._connecting is None or self._connecting.done():
            self._connecting = asyncio.create_task(self._establish())
            self._connecting.add_done_callback(_consume_exception)
        # Shielded: a waiter's cancellation must not abort the shared attempt
        await asyncio.shield(self._connecting)

    async def _establish(self) -> None:
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

        connect = with_retry(
            self._retry,
            retryable_exceptions=(MailboxConnectionError,),
            non_retryable_exceptions=(AuthenticationError,),
        )(self._attempt)
        try:
            self._session = await connect()
        except MailboxConnectionError as exc:
            self._last_error = exc
            logger.error("mailbox_unavailable", error_code=exc.code, error=str(exc))
            raise
        self._last_error = None
        self._fresh = True

    async def _attempt(self) -> MailboxSession:
        delay = self._earliest_attempt() - self._clock()
        if delay > 0:
            logger.info("connection_cooldown_wait", wait_seconds=round(delay, 3))
            await asyncio.sleep(delay)

        self._last_attempt_at = self._clock()
        session = self._factory()
        try:
            await session.connect()
        except ConnectionLimitError:
            backoff = self._config.connection_limit_backoff_seconds
            self._backoff_until = self._clock() + backoff
            logger.warning("connection_limit_backoff", backoff_seconds=backoff)
            raise
        self._connections_opened += 1
        return session

    def _earliest_attempt(self) -> float:
        earliest = self._backoff_until
        if self._last_attempt_at is not None:
            earliest = max(earliest, self._last_attempt_at + self._config.cooldown_seconds)
        return earliest

    async def _check_alive(self, session: MailboxSession) -> None:
        # Servers drop idle connections without telling the client
        try:
            alive = await session.noop()
        except BaseException:
            self._discard_session()
            raise
        if not alive:
            logger.warning("mailbox_session_stale")
            self._discard_session()

    def _discard_session(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        task = asyncio.get_running_loop().create_task(session.close())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)
        logger.info("mailbox_session_discarded")

    # ------------------------------------------------------------------
    # Introspection / shutdown
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        if self._connecting is not None and not self._connecting.done():
            return SessionState.CONNECTING
        if self._session is not None:
            return self._session.state
        if self._closing:
            return SessionState.CLOSING
        if self._last_error is not None:
            return SessionState.FAILED
        return SessionState.IDLE

    def status(self) -> dict[str, Any]:
        now = self._clock()
        return {
            "state": self.state.value,
            "held": self._holder is not None,
            "queue_depth": sum(1 for w in self._waiters if not w.done()),
            "connections_opened": self._connections_opened,
            "backoff_remaining_seconds": round(max(0.0, self._backoff_until - now), 3),
            "last_error": str(self._last_error) if self._last_error else None,
        }

    async def aclose(self) -> None:
        """Close the session; later :meth:`acquire` calls fail."""
        self._closed = True
        if self._connecting is not None and not self._connecting.done():
            self._connecting.cancel()
        self._discard_session()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)


def _consume_exception(task: asyncio.Task[None]) -> None:
    # Every waiter may have been cancelled; keep asyncio from warning
    if not task.cancelled():
        task.exception()
