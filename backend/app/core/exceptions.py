"""
CallSync - Exception Hierarchy

Structured exceptions for consistent error handling across the system.
All exceptions include error codes for API responses.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .rate_limit import RateLimitDecision


class CallSyncError(Exception):
    """Base exception for all CallSync errors."""

    code: str = "UNKNOWN_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(CallSyncError):
    """Input validation error. The message is always safe to show to users."""
    code = "VALIDATION_ERROR"
    status_code = 400


# =============================================================================
# Admission Errors
# =============================================================================

class AdmissionDeniedError(CallSyncError):
    """Request rejected by the admission controller."""
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429

    def __init__(self, decision: "RateLimitDecision", message: Optional[str] = None):
        super().__init__(
            message or "Too many requests. Please slow down.",
            details=decision.to_dict(),
        )
        self.decision = decision


# =============================================================================
# Upstream Errors
# =============================================================================

class UpstreamError(CallSyncError):
    """Error talking to the upstream call or analysis service."""
    code = "UPSTREAM_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str,
        upstream_status: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.upstream_status = upstream_status


class UpstreamTransientError(UpstreamError):
    """Network failure, timeout, or 5xx. Retried by the next poll tick."""
    code = "UPSTREAM_UNAVAILABLE"
    status_code = 503


class UpstreamUnrecoverableError(UpstreamError):
    """Upstream failure that ends the tracked lifecycle."""
    code = "UPSTREAM_UNRECOVERABLE"
    status_code = 502


class SessionNotFoundError(UpstreamUnrecoverableError):
    """Call session not found upstream."""
    code = "SESSION_NOT_FOUND"
    status_code = 404


class StreamOpenError(UpstreamUnrecoverableError):
    """Upstream event stream could not be opened."""
    code = "STREAM_OPEN_FAILED"
    status_code = 502


# =============================================================================
# Analysis Errors
# =============================================================================

class AnalysisError(CallSyncError):
    """Call analysis failed. Non-critical."""
    code = "ANALYSIS_ERROR"
    status_code = 503


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(CallSyncError):
    """Configuration error."""
    code = "CONFIGURATION_ERROR"
    status_code = 500
