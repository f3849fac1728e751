"""
CallSync - Telephony Module

Call session boundary between browser clients and the upstream call service.

Components:
- models: Call status, session and upstream payload models
- validation: Local request validation and sanitization
- transcript: Transcript normalization and monotonic merge
- gateway: Admission-controlled session operations (import app.telephony.gateway)
- relay: Upstream event stream to server-sent events

PRIVACY NOTICE:
    Destination phone numbers are masked in logs and never stored.
"""

from .models import AnalysisResult, CallSession, CallStatus, TranscriptEntry
from .relay import EventRelay, RelayEvent, RelayState

__all__ = [
    "AnalysisResult",
    "CallSession",
    "CallStatus",
    "EventRelay",
    "RelayEvent",
    "RelayState",
    "TranscriptEntry",
]
