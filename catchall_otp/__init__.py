"""Catch-all mailbox OTP retrieval.

Public API re-exported here for convenience::

    from catchall_otp import OtpService, load_config
"""

from .config import (
    ExtractorConfig,
    GatekeeperConfig,
    ImapConfig,
    NotifierConfig,
    RetryConfig,
    ServiceConfig,
    WatchConfig,
    load_config,
)
from .errors import (
    AuthenticationError,
    ConfigurationError,
    ConnectionLimitError,
    FetchError,
    InvalidAddressError,
    MailboxConnectionError,
    OtpError,
    ParseError,
    SearchError,
    SessionReleasedError,
)
from .extractor import CodeExtractor, match_code
from .gatekeeper import SessionGatekeeper, SessionHandle
from .health import create_health_app
from .imap_client import MailboxSession, build_search_query
from .logging import setup_logging
from .models import (
    CandidateCode,
    HealthStatus,
    MatchTier,
    SearchCriteria,
    ServiceStatus,
    SessionState,
    WatchRequest,
    WatchResult,
    WatchState,
)
from .notifier import LogNotificationSink, NotificationSink, WebhookNotificationSink, build_sink
from .parser import MimeParser, ParsedMessage, html_to_text
from .retry import with_retry
from .service import OtpService
from .watcher import WatchController

__all__ = [
    "AuthenticationError",
    "CandidateCode",
    "CodeExtractor",
    "ConfigurationError",
    "ConnectionLimitError",
    "ExtractorConfig",
    "FetchError",
    "GatekeeperConfig",
    "HealthStatus",
    "ImapConfig",
    "InvalidAddressError",
    "LogNotificationSink",
    "MailboxConnectionError",
    "MailboxSession",
    "MatchTier",
    "MimeParser",
    "NotificationSink",
    "NotifierConfig",
    "OtpError",
    "OtpService",
    "ParseError",
    "ParsedMessage",
    "RetryConfig",
    "SearchCriteria",
    "SearchError",
    "ServiceConfig",
    "ServiceStatus",
    "SessionGatekeeper",
    "SessionHandle",
    "SessionReleasedError",
    "SessionState",
    "WatchConfig",
    "WatchController",
    "WatchRequest",
    "WatchResult",
    "WatchState",
    "WebhookNotificationSink",
    "build_search_query",
    "build_sink",
    "create_health_app",
    "html_to_text",
    "load_config",
    "match_code",
    "setup_logging",
    "with_retry",
]
