"""
CallSync - Session Tracking

Client-side lifecycle tracking for a single call session.
"""

from .http_backend import HttpSessionBackend
from .session_tracker import PollToken, SessionBackend, SessionTracker, TrackerPhase

__all__ = [
    "HttpSessionBackend",
    "PollToken",
    "SessionBackend",
    "SessionTracker",
    "TrackerPhase",
]
