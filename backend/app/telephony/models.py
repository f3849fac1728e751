"""
CallSync - Telephony Data Models

Pydantic models for upstream call details and call session state.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat_z(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 with millisecond precision and a ``Z`` suffix."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="milliseconds") + "Z"


class CallStatus(str, Enum):
    """Call lifecycle status."""
    QUEUED = "queued"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    NO_ANSWER = "no-answer"
    BUSY = "busy"
    CANCELLED = "cancelled"
    STOPPED = "stopped"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> Optional["CallStatus"]:
        """
        Parse an upstream status string.

        Accepts underscore spellings ("in_progress") and the American
        "canceled". Returns None for anything unrecognized.
        """
        if isinstance(value, CallStatus):
            return value
        if not isinstance(value, str):
            return None
        normalized = value.strip().lower().replace("_", "-")
        if normalized == "canceled":
            normalized = "cancelled"
        try:
            return cls(normalized)
        except ValueError:
            return None

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES


ACTIVE_STATUSES = frozenset({CallStatus.QUEUED, CallStatus.RINGING, CallStatus.IN_PROGRESS})

TERMINAL_STATUSES = frozenset({
    CallStatus.COMPLETED,
    CallStatus.FAILED,
    CallStatus.NO_ANSWER,
    CallStatus.BUSY,
    CallStatus.CANCELLED,
    CallStatus.STOPPED,
    CallStatus.UNKNOWN,
})

# Statuses upstream reports on its own; "stopped" and "unknown" are local
UPSTREAM_TERMINAL_STATUSES = frozenset({
    CallStatus.COMPLETED,
    CallStatus.FAILED,
    CallStatus.NO_ANSWER,
    CallStatus.BUSY,
    CallStatus.CANCELLED,
})


class TranscriptEntry(BaseModel):
    """One utterance in a call transcript."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    speaker: str = Field(..., alias="user", description="Who spoke (e.g. 'assistant', 'user')")
    text: str
    timestamp: str = Field(..., description="ISO-8601 creation time")

    def to_dict(self) -> dict:
        return {"user": self.speaker, "text": self.text, "timestamp": self.timestamp}


class AnalysisResult(BaseModel):
    """
    Structured analysis attached to a completed call.

    Created once per call and immutable afterwards.
    """

    model_config = ConfigDict(frozen=True)

    call_id: str
    kind: str
    analysis: dict[str, Any]
    summary: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class CallSession(BaseModel):
    """
    The call session tracked by a SessionTracker.

    The transcript is append-only from the tracker's point of view: it is
    only ever replaced by a sequence at least as long.
    """

    id: str = Field(..., description="Upstream call identifier")
    status: CallStatus = CallStatus.QUEUED
    transcript: list[TranscriptEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    analysis: Optional[AnalysisResult] = None


# =============================================================================
# Upstream payloads
# =============================================================================

class UpstreamTranscript(BaseModel):
    """Transcript fragment as reported by the upstream call service."""

    model_config = ConfigDict(extra="allow")

    id: Optional[int] = None
    created_at: Optional[str] = None
    text: Optional[str] = None
    user: Optional[str] = None


class UpstreamCallDetails(BaseModel):
    """
    Call details from the upstream call service.

    Only the fields this system reads are declared; everything else the
    upstream sends is preserved and passed through.
    """

    model_config = ConfigDict(extra="allow")

    call_id: str
    status: str
    to: Optional[str] = None
    from_: Optional[str] = Field(None, alias="from")
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    end_at: Optional[str] = None
    call_length: Optional[float] = None
    completed: Optional[bool] = None
    record: Optional[bool] = None
    recording_url: Optional[str] = None
    summary: Optional[str] = None
    error_message: Optional[str] = None
    concatenated_transcript: Optional[str] = None
    transcripts: Optional[list[UpstreamTranscript]] = None

    def to_response(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class CreateCallResult(BaseModel):
    """Upstream reply to call placement."""

    model_config = ConfigDict(extra="allow")

    status: str
    message: Optional[str] = None
    call_id: Optional[str] = None
    batch_id: Optional[str] = None
