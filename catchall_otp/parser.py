"""MIME parser: raw RFC 822 bytes → ParsedMessage.

Only the fields the code extractor reads are kept.  Attachments are
ignored; verification codes live in the body text.
"""

from __future__ import annotations

import email
import email.policy
import email.utils
from dataclasses import dataclass
from datetime import UTC, datetime

from bs4 import BeautifulSoup

from .errors import ParseError


@dataclass(frozen=True)
class ParsedMessage:
    """Read-only view of one fetched message."""

    message_id: str
    subject: str
    sender: str
    recipient: str
    body_text: str
    body_html: str | None
    date: datetime | None
    received_at: datetime | None = None

    @property
    def arrival(self) -> datetime | None:
        """Store arrival time when known, else the sender's Date header."""
        return self.received_at or self.date


class MimeParser:
    """Stateless parser; treat :meth:`parse` as a pure function."""

    def parse(self, raw_bytes: bytes, *, received_at: datetime | None = None) -> ParsedMessage:
        try:
            msg = email.message_from_bytes(raw_bytes, policy=email.policy.default)
            body_text, body_html = self._extract_bodies(msg)
            if body_text is None and body_html:
                body_text = html_to_text(body_html)

            return ParsedMessage(
                message_id=str(msg.get("Message-ID", "")),
                subject=str(msg.get("Subject", "")),
                sender=str(msg.get("From", "")),
                recipient=str(msg.get("To", "")),
                body_text=body_text or "",
                body_html=body_html,
                date=self._parse_date(msg.get("Date")),
                received_at=received_at,
            )
        except Exception as exc:
            raise ParseError(f"Unparseable message: {exc}") from exc

    def _extract_bodies(self, msg: email.message.Message) -> tuple[str | None, str | None]:
        """Walk MIME parts and return (plain_text, html_text)."""
        body_text: str | None = None
        body_html: str | None = None

        for part in msg.walk():
            # Multipart containers have no content of their own
            if part.get_content_maintype() == "multipart":
                continue
            if "attachment" in str(part.get("Content-Disposition", "")):
                continue

            content_type = part.get_content_type()
            if content_type not in ("text/plain", "text/html"):
                continue

            payload = part.get_content()
            if not isinstance(payload, str):
                continue
            if content_type == "text/plain" and body_text is None:
                body_text = payload
            elif content_type == "text/html" and body_html is None:
                body_html = payload

        return body_text, body_html

    def _parse_date(self, header_value: object) -> datetime | None:
        if not header_value:
            return None
        try:
            parsed = email.utils.parsedate_to_datetime(str(header_value))
        except (TypeError, ValueError):
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed


def html_to_text(html: str) -> str:
    """Flatten an HTML body to whitespace-separated text."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return soup.get_text(separator=" ", strip=True)
