"""Mailbox session: one IMAP connection wrapped for asyncio.

All blocking ``imaplib`` operations are wrapped with ``asyncio.to_thread()``
so a slow mail store never stalls other watch requests.  Only the
:class:`~catchall_otp.gatekeeper.SessionGatekeeper` creates, opens and
closes sessions.
"""

from __future__ import annotations

import asyncio
import imaplib
import ssl
import time
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime, timedelta

import structlog

from .config import ImapConfig
from .errors import (
    AuthenticationError,
    ConnectionLimitError,
    FetchError,
    MailboxConnectionError,
    ParseError,
    SearchError,
)
from .models import SearchCriteria, SessionState
from .parser import MimeParser, ParsedMessage

logger = structlog.get_logger()

DEFAULT_LIMIT_MARKERS = ("Too many simultaneous connections",)


def build_search_query(criteria: SearchCriteria) -> str:
    """Render *criteria* as an IMAP ``SEARCH`` key string.

    ``TO`` is a substring match on the recipient header.  ``SINCE`` is
    day-granular and starts one day early; callers post-filter on arrival time.
    """
    terms: list[str] = []
    if criteria.recipient:
        terms.append(f'TO "{_quote(criteria.recipient)}"')
    elif criteria.domains:
        alternatives = [f'TO "{_quote(domain)}"' for domain in criteria.domains]
        query = alternatives[-1]
        for term in reversed(alternatives[:-1]):
            query = f"OR {term} {query}"
        terms.append(query)

    # SINCE compares dates in the server's own timezone; back off a day
    since = criteria.since.astimezone(UTC) if criteria.since.tzinfo else criteria.since
    terms.append(f"SINCE {(since - timedelta(days=1)).strftime('%d-%b-%Y')}")
    return " ".join(terms)


def _quote(value: str) -> str:
    return value.replace("\\", "").replace('"', "")


class MailboxSession:
    """Owns exactly one live connection to the catch-all mailbox."""

    def __init__(
        self,
        config: ImapConfig,
        *,
        parser: MimeParser | None = None,
        limit_markers: Iterable[str] = DEFAULT_LIMIT_MARKERS,
    ) -> None:
        self._config = config
        self._parser = parser or MimeParser()
        self._limit_markers = tuple(marker.lower() for marker in limit_markers)
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None
        self._state = SessionState.IDLE

    @property
    def state(self) -> SessionState:
        return self._state

    @state.setter
    def state(self, value: SessionState) -> None:
        self._state = value

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection, log in and select the mailbox read-only.

        Raises :class:`ConnectionLimitError`, :class:`AuthenticationError`
        or :class:`MailboxConnectionError`.
        """
        self._state = SessionState.CONNECTING
        try:
            await asyncio.to_thread(self._open_sync)
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(self._login_sync),
                    timeout=self._config.auth_timeout_seconds,
                )
            except TimeoutError as exc:
                await asyncio.to_thread(self._abort_sync)
                raise MailboxConnectionError(
                    f"Authentication timed out after {self._config.auth_timeout_seconds}s"
                ) from exc
        except MailboxConnectionError as exc:
            self._conn = None
            self._state = SessionState.FAILED
            logger.warning(
                "imap_connect_failed",
                host=self._config.host,
                error_code=exc.code,
                error=str(exc),
            )
            raise

        self._state = SessionState.READY
        logger.info(
            "imap_connected",
            host=self._config.host,
            mailbox=self._config.mailbox,
        )

    def _open_sync(self) -> None:
        timeout = self._config.connect_timeout_seconds
        try:
            if self._config.use_ssl:
                self._conn = imaplib.IMAP4_SSL(
                    self._config.host,
                    self._config.port,
                    ssl_context=ssl.create_default_context(),
                    timeout=timeout,
                )
            else:
                self._conn = imaplib.IMAP4(self._config.host, self._config.port, timeout=timeout)
        except (imaplib.IMAP4.error, OSError) as exc:
            raise self._classify_connect_error(exc) from exc

    def _login_sync(self) -> None:
        assert self._conn is not None
        try:
            self._conn.login(self._config.username, self._config.password.get_secret_value())
            status, data = self._conn.select(self._config.mailbox, readonly=True)
        except imaplib.IMAP4.abort as exc:
            raise self._classify_connect_error(exc) from exc
        except imaplib.IMAP4.error as exc:
            if self._is_limit_error(exc):
                raise ConnectionLimitError(str(exc)) from exc
            raise AuthenticationError(f"Login rejected: {exc}") from exc
        except OSError as exc:
            raise MailboxConnectionError(f"Connection lost during login: {exc}") from exc

        if status != "OK":
            raise MailboxConnectionError(
                f"Cannot select mailbox {self._config.mailbox!r}: {data!r}"
            )

    def _abort_sync(self) -> None:
        if self._conn is not None:
            try:
                self._conn.shutdown()
            except OSError:
                pass

    def _classify_connect_error(self, exc: BaseException) -> MailboxConnectionError:
        if self._is_limit_error(exc):
            return ConnectionLimitError(str(exc))
        return MailboxConnectionError(f"Failed to connect to {self._config.host}: {exc}")

    def _is_limit_error(self, exc: BaseException) -> bool:
        text = str(exc).lower()
        return any(marker in text for marker in self._limit_markers)

    async def close(self) -> None:
        """Close mailbox and logout.  Never raises."""
        if self._conn is None:
            self._state = SessionState.IDLE
            return
        self._state = SessionState.CLOSING
        await asyncio.to_thread(self._disconnect_sync)
        self._conn = None
        self._state = SessionState.IDLE
        logger.info("imap_disconnected", host=self._config.host)

    def _disconnect_sync(self) -> None:
        assert self._conn is not None
        try:
            self._conn.close()
        except (imaplib.IMAP4.error, OSError):
            pass
        try:
            self._conn.logout()
        except (imaplib.IMAP4.error, OSError):
            pass

    async def noop(self) -> bool:
        """Check connection liveness with a NOOP command."""
        if self._conn is None:
            return False
        try:
            status, _ = await asyncio.to_thread(self._conn.noop)
            return status == "OK"
        except (imaplib.IMAP4.error, OSError):
            return False

    # ------------------------------------------------------------------
    # Search / fetch
    # ------------------------------------------------------------------

    async def search(self, criteria: SearchCriteria) -> list[str]:
        """Return UIDs matching *criteria* in store order (not chronological)."""
        query = build_search_query(criteria)
        uids = await asyncio.to_thread(self._search_sync, query)
        logger.debug("imap_search_complete", query=query, hits=len(uids))
        return uids

    def _search_sync(self, query: str) -> list[str]:
        conn = self._require_conn(SearchError)
        try:
            status, data = conn.uid("SEARCH", None, query)
        except (imaplib.IMAP4.error, OSError) as exc:
            self._state = SessionState.FAILED
            raise SearchError(f"Search failed: {exc}") from exc
        if status != "OK":
            raise SearchError(f"Search rejected: {data!r}")
        if not data or not data[0]:
            return []
        return [uid.decode() for uid in data[0].split()]

    async def fetch(self, uids: Sequence[str], *, limit: int = 3) -> list[ParsedMessage]:
        """Fetch and parse the *limit* newest of *uids*, newest first.

        Older hits are dropped on purpose: a polling caller searches again
        on its next cycle.  Messages that fail to parse are skipped.
        """
        newest = sorted(uids, key=int, reverse=True)[:limit]
        if not newest:
            return []

        raw_messages = await asyncio.to_thread(self._fetch_sync, newest)
        messages: list[ParsedMessage] = []
        for uid, raw, received_at in raw_messages:
            try:
                messages.append(self._parser.parse(raw, received_at=received_at))
            except ParseError as exc:
                logger.warning("message_parse_failed", uid=uid, error=str(exc))
        return messages

    def _fetch_sync(self, uids: Sequence[str]) -> list[tuple[str, bytes, datetime | None]]:
        conn = self._require_conn(FetchError)
        results: list[tuple[str, bytes, datetime | None]] = []
        for uid in uids:
            try:
                # BODY.PEEK leaves the \Seen flag alone on a shared mailbox
                status, msg_data = conn.uid("FETCH", uid, "(INTERNALDATE BODY.PEEK[])")
            except (imaplib.IMAP4.error, OSError) as exc:
                self._state = SessionState.FAILED
                raise FetchError(f"Fetch of UID {uid} failed: {exc}") from exc
            if status != "OK":
                raise FetchError(f"Fetch of UID {uid} rejected: {msg_data!r}")

            literal = _first_literal(msg_data)
            if literal is None:
                # Expunged between SEARCH and FETCH
                continue
            envelope, raw = literal
            results.append((uid, raw, _internal_date(envelope)))
        return results

    def _require_conn(
        self, error: type[SearchError] | type[FetchError]
    ) -> imaplib.IMAP4_SSL | imaplib.IMAP4:
        if self._conn is None:
            raise error("Mailbox session is not connected")
        return self._conn


def _first_literal(msg_data: list | None) -> tuple[bytes, bytes] | None:
    for item in msg_data or []:
        if isinstance(item, tuple) and len(item) >= 2 and isinstance(item[1], bytes):
            return item[0], item[1]
    return None


def _internal_date(envelope: bytes) -> datetime | None:
    """Arrival time at the store, from the INTERNALDATE fetch item."""
    parsed = imaplib.Internaldate2tuple(envelope)
    if parsed is None:
        return None
    return datetime.fromtimestamp(time.mktime(parsed), UTC)
