"""
CallSync - API Schemas

Pydantic models for request/response validation.
These define the contract between frontend and backend.

Request bodies are deliberately loose: field checks happen in the session
gateway so every rejection carries the same user-facing message whether
it arrives over HTTP or from an in-process tracker.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ===========================================
# Call Schemas
# ===========================================

class CreateCallRequest(BaseModel):
    """
    Request to place a call.

    Any extra field (voice, max_duration, temperature, first_sentence, ...)
    is forwarded to the upstream call service after validation.
    """

    model_config = ConfigDict(extra="allow")

    phone_number: Optional[Any] = Field(default=None, description="Destination in international format")
    task: Optional[Any] = Field(default=None, description="Instructions for the voice agent")

    def options(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class CreateCallResponse(BaseModel):
    """Response after placing a call."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(description="Upstream call identifier")
    status: str = Field(description="Local session status (always 'queued')")
    message: Optional[str] = None


class StopCallResponse(BaseModel):
    id: str
    status: str
    message: Optional[str] = None


class TranscriptEntrySchema(BaseModel):
    user: str = Field(description="Speaker")
    text: str
    timestamp: str


class TranscriptResponse(BaseModel):
    """Normalized transcript for one call."""

    call_id: str
    status: str
    entries: List[TranscriptEntrySchema] = Field(default_factory=list)
    concatenated_transcript: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AnalyzeRequest(BaseModel):
    """Request to analyze a completed call."""

    kind: str = Field(default="general", description="pizza_order | general")
    questions: Optional[List[str]] = Field(
        default=None,
        description="Extra questions for a general analysis",
    )


class AnalysisResponse(BaseModel):
    call_id: str
    kind: str
    analysis: Dict[str, Any]
    summary: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ===========================================
# Errors
# ===========================================

class ErrorResponse(BaseModel):
    error: str
    code: str
    details: Dict[str, Any] = Field(default_factory=dict)


class RateLimitErrorResponse(BaseModel):
    """Body of a 429 response; mirrors the X-RateLimit-* headers."""

    error: str
    limit: int
    remaining: int
    reset: str
    retryAfter: Optional[int] = None


# ===========================================
# Health
# ===========================================

class HealthResponse(BaseModel):
    """System health check response."""

    status: str = Field(description="Overall status: healthy | degraded")
    timestamp: str
    version: str = Field(default="0.1.0")
    environment: str
    checks: Dict[str, Dict[str, Any]] = Field(
        description="Individual component statuses"
    )
