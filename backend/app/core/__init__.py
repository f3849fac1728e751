"""
CallSync - Core Package

Cross-cutting building blocks:
- rate_limit: Sliding-window admission control
- exceptions: Error hierarchy rendered by the API layer
- logging: Structured logging with request context
"""

from .exceptions import CallSyncError
from .rate_limit import (
    RATE_LIMIT_PROFILES,
    AdmissionController,
    RateLimitDecision,
    RateLimitProfile,
    RateLimitStore,
)

__all__ = [
    "AdmissionController",
    "CallSyncError",
    "RATE_LIMIT_PROFILES",
    "RateLimitDecision",
    "RateLimitProfile",
    "RateLimitStore",
]
