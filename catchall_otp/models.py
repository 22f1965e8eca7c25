"""Data models shared by the gatekeeper, extractor and watch controller."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field

FAILURE_MESSAGE = "Could not check mail right now, try again."


class ServiceStatus(str, Enum):
    """Runtime status of a service instance."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class MatchTier(str, Enum):
    """Which extraction strategy produced a code, most to least trusted."""

    PRIORITY = "priority"
    CONTEXTUAL = "contextual"
    GENERIC = "generic"


class SessionState(str, Enum):
    """Lifecycle of the single mailbox connection."""

    IDLE = "idle"
    CONNECTING = "connecting"
    READY = "ready"
    BUSY = "busy"
    CLOSING = "closing"
    FAILED = "failed"


class WatchState(str, Enum):
    """States of a watch request; the last four are terminal."""

    STARTING = "starting"
    DRAINING_EXISTING = "draining_existing"
    POLLING = "polling"
    FOUND = "found"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SearchCriteria(BaseModel):
    """Conjunction of a recipient filter and a lower-bound timestamp.

    ``recipient`` set: exact-address match.  ``recipient`` unset: any
    address in ``domains``.  The mail store matches ``since`` at day
    granularity, so callers post-filter on each message's arrival time.
    """

    model_config = ConfigDict(frozen=True)

    recipient: str | None = Field(default=None, description="Exact target address")
    domains: tuple[str, ...] = Field(
        default=(),
        description="Catch-all domains searched when no recipient is given",
    )
    since: datetime = Field(description="Only messages at or after this instant (UTC)")


class CandidateCode(BaseModel):
    """A verification code pulled from one message."""

    model_config = ConfigDict(frozen=True)

    value: str = Field(pattern=r"^[0-9]{4,6}$", description="The 4-6 digit code")
    source_subject: str = Field(description="Subject of the message it came from")
    source_recipient: str = Field(description="Recipient header of that message")
    received_at: datetime | None = Field(default=None, description="Message date")
    match_tier: MatchTier = Field(description="Strategy that matched")
    target_address: str | None = Field(
        default=None,
        description="Address the requester asked about",
    )


class WatchRequest(BaseModel):
    """One caller's request to find a code.

    ``max_polls=0`` is a one-shot check (drain the lookback window only);
    ``max_polls=None`` polls until a code turns up, the deadline passes
    or the request is cancelled.
    """

    model_config = ConfigDict(frozen=True)

    target_address: str | None = Field(default=None, description="Address to look for")
    deadline: datetime | None = Field(default=None, description="Advisory wall-clock deadline")
    poll_interval_seconds: float = Field(default=1.0, ge=0, description="Sleep between polls")
    lookback_seconds: float = Field(
        default=30.0,
        ge=0,
        description="How far back the initial drain searches",
    )
    max_polls: int | None = Field(default=None, ge=0, description="Cap on polling cycles")


class WatchResult(BaseModel):
    """Terminal outcome of a watch request."""

    state: WatchState = Field(description="found, timed_out, failed or cancelled")
    target_address: str | None = Field(default=None)
    code: CandidateCode | None = Field(default=None)
    elapsed_seconds: float = Field(default=0.0, description="Wall-clock time spent")
    cycles: int = Field(default=0, description="Search/fetch cycles executed")
    error: str | None = Field(default=None, description="Underlying cause when failed")
    finished_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def found(self) -> bool:
        return self.state is WatchState.FOUND

    @computed_field  # type: ignore[prop-decorator]
    @property
    def message(self) -> str:
        """One-line outcome for humans; never a stack trace."""
        target = self.target_address or "the catch-all domains"
        if self.state is WatchState.FOUND and self.code is not None:
            return (
                f"Found code {self.code.value} for {target} "
                f"in {int(self.elapsed_seconds)}s"
            )
        if self.state is WatchState.FAILED:
            return FAILURE_MESSAGE
        if self.state is WatchState.CANCELLED:
            return f"Stopped watching {target}."
        return f"No verification code found for {target}."


class HealthStatus(BaseModel):
    """Response model for the /health probe endpoint."""

    service_name: str = Field(description="Name of the service")
    status: ServiceStatus = Field(description="Current service status")
    uptime_seconds: float = Field(description="Seconds since the service started")
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Mailbox session and watch details",
    )
