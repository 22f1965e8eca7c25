"""Shared test fixtures for the catchall_otp test suite."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import pytest

from catchall_otp.config import (
    ExtractorConfig,
    GatekeeperConfig,
    ImapConfig,
    NotifierConfig,
    RetryConfig,
    ServiceConfig,
    WatchConfig,
)
from catchall_otp.errors import SearchError
from catchall_otp.models import SearchCriteria, SessionState
from catchall_otp.parser import ParsedMessage

UBER_SENDER = "Uber <admin@uber.com>"
UBER_SUBJECT = "Your Uber verification code"


@pytest.fixture
def imap_config() -> ImapConfig:
    return ImapConfig(
        host="imap.test.com",
        port=993,
        use_ssl=True,
        username="testuser",
        password="testpass",
        mailbox="INBOX",
        connect_timeout_seconds=10.0,
        auth_timeout_seconds=10.0,
    )


@pytest.fixture
def gatekeeper_config() -> GatekeeperConfig:
    return GatekeeperConfig(cooldown_seconds=0.0, connection_limit_backoff_seconds=0.1)


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(
        max_attempts=1,
        initial_wait_seconds=0.01,
        max_wait_seconds=0.05,
        multiplier=2.0,
    )


@pytest.fixture
def watch_config() -> WatchConfig:
    return WatchConfig(
        supported_domains=["alpha.test", "beta.test"],
        poll_interval_seconds=0.02,
        recent_window_seconds=30.0,
        check_lookback_hours=24.0,
        fetch_limit=3,
        date_slack_seconds=5.0,
    )


@pytest.fixture
def service_config(
    imap_config: ImapConfig,
    gatekeeper_config: GatekeeperConfig,
    retry_config: RetryConfig,
    watch_config: WatchConfig,
) -> ServiceConfig:
    return ServiceConfig(
        name="otp-test",
        health_port=18080,
        log_json=False,
        imap=imap_config,
        gatekeeper=gatekeeper_config,
        retry=retry_config,
        extractor=ExtractorConfig(),
        watch=watch_config,
        notifier=NotifierConfig(),
    )


# ------------------------------------------------------------------
# Messages
# ------------------------------------------------------------------


def _build_email(
    *,
    subject: str = UBER_SUBJECT,
    from_addr: str = UBER_SENDER,
    to_addr: str = "rider@alpha.test",
    body: str | None = "Enter this verification code: 4821",
    body_html: str | None = None,
    date: str | None = "Mon, 02 Jun 2025 12:00:00 +0000",
) -> bytes:
    """Build a raw email; plain, HTML-only or multipart/alternative."""
    if body is not None and body_html is not None:
        msg = MIMEMultipart("alternative")
        msg.attach(MIMEText(body, "plain"))
        msg.attach(MIMEText(body_html, "html"))
    elif body_html is not None:
        msg = MIMEText(body_html, "html")
    else:
        msg = MIMEText(body or "", "plain")
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_addr
    msg["Message-ID"] = "<otp-001@uber.com>"
    if date is not None:
        msg["Date"] = date
    return msg.as_bytes()


@pytest.fixture
def build_email() -> Callable[..., bytes]:
    return _build_email


def _make_message(
    *,
    body: str = "Enter this verification code: 4821",
    to_addr: str = "rider@alpha.test",
    subject: str = UBER_SUBJECT,
    sender: str = UBER_SENDER,
    age_seconds: float = 0.0,
    received_at: datetime | None = None,
) -> ParsedMessage:
    if received_at is None:
        received_at = datetime.now(UTC) - timedelta(seconds=age_seconds)
    return ParsedMessage(
        message_id=f"<{to_addr}-{received_at.timestamp()}@uber.com>",
        subject=subject,
        sender=sender,
        recipient=to_addr,
        body_text=body,
        body_html=None,
        date=received_at,
        received_at=received_at,
    )


@pytest.fixture
def make_message() -> Callable[..., ParsedMessage]:
    return _make_message


# ------------------------------------------------------------------
# In-memory mailbox standing in for MailboxSession
# ------------------------------------------------------------------


class FakeMailbox:
    """Scriptable mail store; ``open_session`` is a gatekeeper session factory."""

    def __init__(self) -> None:
        self.messages: dict[str, ParsedMessage] = {}
        self.connect_errors: list[Exception] = []
        self.connect_delay = 0.0
        self.search_delay = 0.0
        self.search_error: Exception | None = None
        self.fetch_error: Exception | None = None
        self.connect_times: list[float] = []
        self.searches: list[SearchCriteria] = []
        self.open = 0
        self.max_open = 0
        self.closed = 0
        self.noops = 0
        self.generation = 0
        self._next_uid = 100

    def deliver(self, message: ParsedMessage, uid: str | None = None) -> str:
        if uid is None:
            self._next_uid += 1
            uid = str(self._next_uid)
        self.messages[uid] = message
        return uid

    def drop_connections(self) -> None:
        """Server side hang-up of every open connection."""
        self.generation += 1

    def open_session(self) -> FakeSession:
        return FakeSession(self)


class FakeSession:
    def __init__(self, mailbox: FakeMailbox) -> None:
        self._mailbox = mailbox
        self.state = SessionState.IDLE
        self._connected = False
        self._generation = mailbox.generation

    async def connect(self) -> None:
        mailbox = self._mailbox
        self.state = SessionState.CONNECTING
        mailbox.connect_times.append(time.monotonic())
        if mailbox.connect_delay:
            await asyncio.sleep(mailbox.connect_delay)
        if mailbox.connect_errors:
            self.state = SessionState.FAILED
            raise mailbox.connect_errors.pop(0)
        self._connected = True
        self._generation = mailbox.generation
        mailbox.open += 1
        mailbox.max_open = max(mailbox.max_open, mailbox.open)
        self.state = SessionState.READY

    async def close(self) -> None:
        if self._connected:
            self._connected = False
            self._mailbox.open -= 1
            self._mailbox.closed += 1
        self.state = SessionState.IDLE

    async def noop(self) -> bool:
        self._mailbox.noops += 1
        return self._connected and self._generation == self._mailbox.generation

    async def search(self, criteria: SearchCriteria) -> list[str]:
        mailbox = self._mailbox
        mailbox.searches.append(criteria)
        if self._generation != mailbox.generation:
            self.state = SessionState.FAILED
            raise SearchError("Search failed: socket error: EOF")
        if mailbox.search_delay:
            await asyncio.sleep(mailbox.search_delay)
        if mailbox.search_error is not None:
            self.state = SessionState.FAILED
            raise mailbox.search_error
        hits = []
        for uid, message in mailbox.messages.items():
            recipient = message.recipient.lower()
            if criteria.recipient and criteria.recipient not in recipient:
                continue
            if not criteria.recipient and not any(d in recipient for d in criteria.domains):
                continue
            hits.append(uid)
        return hits

    async def fetch(self, uids: Sequence[str], *, limit: int = 3) -> list[ParsedMessage]:
        if self._mailbox.fetch_error is not None:
            raise self._mailbox.fetch_error
        newest = sorted(uids, key=int, reverse=True)[:limit]
        return [self._mailbox.messages[uid] for uid in newest]


@pytest.fixture
def mailbox() -> FakeMailbox:
    return FakeMailbox()
