"""Tiered verification-code extraction.

Verification emails mix the code with unrelated numbers (dates, amounts,
order IDs).  Patterns anchored to known phrasing are tried first; the bare
digit tier is a last resort with a known false-positive rate and results
from it are labelled ``MatchTier.GENERIC`` so callers can tell.

Tiers are tried in order and the first match wins; nothing is aggregated
across tiers or across messages.
"""

from __future__ import annotations

import re

import structlog

from .config import ExtractorConfig
from .models import CandidateCode, MatchTier
from .parser import ParsedMessage

logger = structlog.get_logger()

PRIORITY_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"enter this verification code[:\s]*([0-9]{4,6})",
        r"verification code is[:\s]*([0-9]{4,6})",
        r"verification code[:\s]*([0-9]{4,6})",
        r"your code[:\s]*([0-9]{4,6})",
        r"code is[:\s]*([0-9]{4,6})",
        r"code[:\s]*([0-9]{4,6})",
    )
)

# Keyword, then a short run of non-digits, then the code
CONTEXTUAL_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"verification code[^0-9]{1,60}?([0-9]{4,6})",
        r"enter this code[^0-9]{1,60}?([0-9]{4,6})",
        r"this verification code[^0-9]{1,60}?([0-9]{4,6})",
    )
)

# 4-digit tokens are preferred over 6-digit ones
GENERIC_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b([0-9]{4})\b"),
    re.compile(r"\b([0-9]{6})\b"),
)

TIERS: tuple[tuple[MatchTier, tuple[re.Pattern[str], ...]], ...] = (
    (MatchTier.PRIORITY, PRIORITY_PATTERNS),
    (MatchTier.CONTEXTUAL, CONTEXTUAL_PATTERNS),
    (MatchTier.GENERIC, GENERIC_PATTERNS),
)


class CodeExtractor:
    """Maps (message, target address) to at most one :class:`CandidateCode`."""

    def __init__(self, config: ExtractorConfig | None = None) -> None:
        config = config or ExtractorConfig()
        self._subjects = tuple(s.lower() for s in config.subject_signatures if s)
        self._senders = tuple(s.lower() for s in config.sender_allow_list if s)

    def is_eligible(self, message: ParsedMessage, target_address: str | None = None) -> bool:
        """Subject signature, sender allow-list and recipient checks."""
        subject = message.subject.lower()
        if not any(signature in subject for signature in self._subjects):
            return False
        if self._senders:
            sender = message.sender.lower()
            if not any(allowed in sender for allowed in self._senders):
                return False
        if target_address and target_address.lower() not in message.recipient.lower():
            return False
        return True

    def extract(
        self,
        message: ParsedMessage,
        target_address: str | None = None,
    ) -> CandidateCode | None:
        """Return the code in *message*, or ``None`` when there is none.

        ``None`` is the normal outcome for unrelated mail.
        """
        if not self.is_eligible(message, target_address):
            logger.debug(
                "message_not_eligible",
                subject=message.subject,
                recipient=message.recipient,
            )
            return None

        match = match_code(message.body_text)
        if match is None:
            logger.debug("no_code_in_message", subject=message.subject)
            return None

        value, tier = match
        if tier is MatchTier.GENERIC:
            logger.info("generic_tier_match", subject=message.subject, recipient=message.recipient)
        return CandidateCode(
            value=value,
            source_subject=message.subject,
            source_recipient=message.recipient,
            received_at=message.arrival,
            match_tier=tier,
            target_address=target_address,
        )


def match_code(text: str) -> tuple[str, MatchTier] | None:
    """Run the tiers over *text*; first pattern with a match wins."""
    if not text:
        return None
    for tier, patterns in TIERS:
        for pattern in patterns:
            found = pattern.search(text)
            if found:
                return found.group(1), tier
    return None
