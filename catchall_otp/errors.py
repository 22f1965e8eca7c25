"""Error taxonomy for the OTP relay.

Finding no code is never an error: extraction returns ``None`` and a watch
that runs out of time ends in ``WatchState.TIMED_OUT``.
"""

from __future__ import annotations


class OtpError(Exception):
    """Base error for all catchall-otp operations."""

    code: str = "OTP_ERROR"


class ConfigurationError(OtpError):
    """A required setting is missing or invalid. Fatal at startup."""

    code = "CONFIGURATION_ERROR"


class MailboxConnectionError(OtpError):
    """Transport failure while opening the mailbox session. Retryable."""

    code = "CONNECTION_FAILED"


class ConnectionLimitError(MailboxConnectionError):
    """The mail store refused the connection because too many are open.

    The gatekeeper answers this with an extended backoff rather than an
    immediate retry.
    """

    code = "CONNECTION_LIMIT"


class AuthenticationError(MailboxConnectionError):
    """Credentials were rejected by the mail store. Not retried."""

    code = "AUTH_FAILED"


class SearchError(OtpError):
    code = "SEARCH_FAILED"


class FetchError(OtpError):
    code = "FETCH_FAILED"


class ParseError(OtpError):
    """A single message could not be parsed; callers skip it."""

    code = "PARSE_FAILED"


class InvalidAddressError(OtpError):
    """Address is malformed or outside the supported catch-all domains."""

    code = "INVALID_ADDRESS"


class SessionReleasedError(OtpError):
    """A session handle was used after it was released."""

    code = "SESSION_RELEASED"
