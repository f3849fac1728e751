"""
CallSync - Services Package

Contains service interfaces and implementations for:
- Upstream call placement and event streaming
- Transcript analysis

Design Pattern:
    Each service defines a Protocol (interface) and one or more implementations.
    The gateway is configured with concrete implementations at startup,
    enabling dependency injection and easy testing/swapping of components.
"""

from .analysis import (
    AnalysisService,
    DummyAnalysisService,
    OpenAIAnalysisService,
    create_analysis_service,
)
from .call_service import (
    CallService,
    HttpCallService,
    create_call_service,
)

__all__ = [
    # Analysis
    "AnalysisService",
    "DummyAnalysisService",
    "OpenAIAnalysisService",
    "create_analysis_service",
    # Upstream calls
    "CallService",
    "HttpCallService",
    "create_call_service",
]
