"""Service configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars.
List-valued settings accept either a JSON array or a comma-separated string
(``WATCH_SUPPORTED_DOMAINS=alpha.test,beta.test``).
"""

from __future__ import annotations

import json
from typing import Annotated

from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode

from .errors import ConfigurationError

CommaList = Annotated[list[str], NoDecode]


def _split_csv(value: object) -> object:
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.startswith("["):
            return json.loads(stripped)
        return [item.strip() for item in stripped.split(",") if item.strip()]
    return value


class ImapConfig(BaseSettings):
    """Mail store connection settings. Every field is required."""

    model_config = {"env_prefix": "IMAP_"}

    host: str = Field(description="IMAP server hostname")
    port: int = Field(description="IMAP server port")
    use_ssl: bool = Field(description="Use SSL/TLS connection")
    username: str = Field(description="IMAP login username")
    password: SecretStr = Field(description="IMAP login password")
    mailbox: str = Field(description="Catch-all folder to search")
    connect_timeout_seconds: float = Field(
        description="Socket timeout for establishing the connection",
    )
    auth_timeout_seconds: float = Field(description="Upper bound for LOGIN + SELECT")


class GatekeeperConfig(BaseSettings):
    """Connection-rate limits enforced by the session gatekeeper."""

    model_config = {"env_prefix": "GATEKEEPER_"}

    cooldown_seconds: float = Field(
        default=2.0,
        description="Minimum interval between successive connection establishments",
    )
    connection_limit_backoff_seconds: float = Field(
        default=5.0,
        description="Backoff after the server reports too many simultaneous connections",
    )
    connection_limit_markers: CommaList = Field(
        default_factory=lambda: ["Too many simultaneous connections"],
        description="Server reply fragments that identify a connection-limit refusal",
    )

    @field_validator("connection_limit_markers", mode="before")
    @classmethod
    def _split_markers(cls, value: object) -> object:
        return _split_csv(value)


class RetryConfig(BaseSettings):
    """Retry / backoff settings for connection attempts, driven by Tenacity."""

    model_config = {"env_prefix": "RETRY_"}

    max_attempts: int = Field(default=3, description="Maximum connection attempts per acquire")
    initial_wait_seconds: float = Field(
        default=0.5,
        description="Initial backoff wait in seconds",
    )
    max_wait_seconds: float = Field(
        default=10.0,
        description="Maximum backoff wait in seconds",
    )
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class ExtractorConfig(BaseSettings):
    """Which messages count as verification emails."""

    model_config = {"env_prefix": "EXTRACTOR_"}

    subject_signatures: CommaList = Field(
        default_factory=lambda: [
            "your uber verification code",
            "your uber account verification code",
        ],
        description="Case-insensitive subject fragments of verification emails",
    )
    sender_allow_list: CommaList = Field(
        default_factory=lambda: ["admin@uber.com"],
        description="Accepted sender fragments; empty disables the sender check",
    )

    @field_validator("subject_signatures", "sender_allow_list", mode="before")
    @classmethod
    def _split_lists(cls, value: object) -> object:
        return _split_csv(value)


class WatchConfig(BaseSettings):
    """Polling cadence and search windows for watch requests."""

    model_config = {"env_prefix": "WATCH_"}

    supported_domains: CommaList = Field(
        default_factory=list,
        description="Catch-all domains served by the mailbox",
    )
    poll_interval_seconds: float = Field(default=1.0, description="Sleep between poll cycles")
    recent_window_seconds: float = Field(
        default=30.0,
        description="How far back a watch looks for codes that arrived just before it",
    )
    check_lookback_hours: float = Field(
        default=24.0,
        description="How far back a one-shot check looks",
    )
    fetch_limit: int = Field(default=3, description="Newest messages fetched per cycle")
    date_slack_seconds: float = Field(
        default=5.0,
        description="Clock skew tolerated when post-filtering day-granular search results",
    )
    default_timeout_seconds: float | None = Field(
        default=None,
        description="Deadline applied to watches started without one; None means no deadline",
    )

    @field_validator("supported_domains", mode="before")
    @classmethod
    def _split_domains(cls, value: object) -> object:
        return _split_csv(value)


class NotifierConfig(BaseSettings):
    """Where watch outcomes are delivered."""

    model_config = {"env_prefix": "NOTIFY_"}

    webhook_url: str | None = Field(
        default=None,
        description="POST target for outcomes; logged only when unset",
    )
    timeout_seconds: float = Field(default=10.0, description="HTTP request timeout")


class ServiceConfig(BaseSettings):
    """Root configuration for a service instance.

    Nested configs are populated from their own env-var prefixes.
    """

    model_config = {"env_prefix": "SERVICE_"}

    name: str = Field(default="catchall-otp", description="Service name used in logs and probes")
    health_port: int = Field(default=8080, description="Port for health and status endpoints")
    log_json: bool = Field(default=True, description="Emit JSON log lines")
    log_level: str = Field(default="INFO", description="Root log level")

    imap: ImapConfig = Field(default_factory=ImapConfig)
    gatekeeper: GatekeeperConfig = Field(default_factory=GatekeeperConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    extractor: ExtractorConfig = Field(default_factory=ExtractorConfig)
    watch: WatchConfig = Field(default_factory=WatchConfig)
    notifier: NotifierConfig = Field(default_factory=NotifierConfig)


def load_config(**overrides: object) -> ServiceConfig:
    """Build :class:`ServiceConfig` from the environment.

    Raises :class:`ConfigurationError` naming every missing or invalid field.
    """
    try:
        return ServiceConfig(**overrides)
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in err["loc"]) for err in exc.errors()})
        raise ConfigurationError(
            f"{exc.title} configuration invalid: {', '.join(fields)}"
        ) from exc
