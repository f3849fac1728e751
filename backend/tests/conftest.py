"""
CallSync - Test Configuration and Fixtures

Shared fixtures for all test modules.

Upstream collaborators are replaced by in-memory fakes so no test touches
the network. Time-dependent components take a FakeClock.
"""

import asyncio
import os
import sys
from typing import Any, Generator, Optional

import pytest
from fastapi.testclient import TestClient

# Ensure backend package is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.config import Settings
from app.core.exceptions import AnalysisError, SessionNotFoundError
from app.core.rate_limit import AdmissionController
from app.services.analysis import DummyAnalysisService
from app.telephony.gateway import SessionGateway
from app.telephony.models import CreateCallResult, UpstreamCallDetails


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")


# =============================================================================
# Fakes
# =============================================================================

class FakeClock:
    """Manually advanced clock, in seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeStream:
    """Upstream byte stream that yields scripted chunks, then optionally fails."""

    def __init__(self, chunks: list, error: Optional[Exception] = None):
        self._chunks = chunks
        self._error = error
        self.closed = False

    async def aiter_bytes(self):
        for chunk in self._chunks:
            yield chunk
            await asyncio.sleep(0)
        if self._error is not None:
            raise self._error

    async def aclose(self) -> None:
        self.closed = True


class FakeCallService:
    """In-memory stand-in for the upstream call service."""

    def __init__(self):
        self.calls: dict[str, dict] = {}
        self.sent: list[dict] = []
        self.stopped: list[str] = []
        self.stream_chunks: list = []
        self.stream_error: Optional[Exception] = None
        self.open_error: Optional[Exception] = None
        self.opened_for: list[Optional[str]] = []
        self.streams: list[FakeStream] = []
        self.get_error: Optional[Exception] = None

    def add_call(self, call_id: str, status: str = "queued", **fields: Any) -> dict:
        record = {"call_id": call_id, "status": status, **fields}
        self.calls[call_id] = record
        return record

    async def send_call(self, payload: dict) -> CreateCallResult:
        self.sent.append(payload)
        call_id = f"call-{len(self.sent)}"
        self.add_call(call_id, status="queued", to=payload.get("phone_number"))
        return CreateCallResult(status="success", message="Call successfully queued.", call_id=call_id)

    async def get_call(self, call_id: str) -> UpstreamCallDetails:
        if self.get_error is not None:
            raise self.get_error
        if call_id not in self.calls:
            raise SessionNotFoundError(f"Call not found: {call_id}", upstream_status=404)
        return UpstreamCallDetails.model_validate(self.calls[call_id])

    async def stop_call(self, call_id: str) -> dict:
        if call_id not in self.calls:
            raise SessionNotFoundError(f"Call not found: {call_id}", upstream_status=404)
        self.stopped.append(call_id)
        return {"status": "success", "message": "Call ended successfully."}

    async def list_calls(self, limit=None, offset=None, status=None) -> dict:
        calls = [c for c in self.calls.values() if status is None or c["status"] == status]
        start = offset or 0
        end = start + limit if limit else None
        return {"total_count": len(calls), "count": len(calls[start:end]), "calls": calls[start:end]}

    async def get_recording(self, call_id: str) -> dict:
        if call_id not in self.calls:
            raise SessionNotFoundError(f"Call not found: {call_id}", upstream_status=404)
        return {"url": f"https://recordings.example.com/{call_id}.mp3"}

    async def open_event_stream(self, call_id: Optional[str] = None) -> FakeStream:
        self.opened_for.append(call_id)
        if self.open_error is not None:
            raise self.open_error
        stream = FakeStream(list(self.stream_chunks), self.stream_error)
        self.streams.append(stream)
        return stream


class FailingAnalysisService:
    """Analysis backend that always fails."""

    backend_id = "failing"

    def __init__(self):
        self.calls = 0

    async def analyze(self, transcript, kind="general", metadata=None, questions=None):
        self.calls += 1
        raise AnalysisError("analysis backend unavailable")


# =============================================================================
# Settings Fixtures
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    """Create test settings with safe defaults."""
    return Settings(
        app_env="testing",
        app_debug=True,
        app_log_level="WARNING",  # Reduce noise in tests
        upstream_api_key="test-key",
        analysis_backend="dummy",
        rate_limit_enabled=True,
    )


@pytest.fixture
def production_settings() -> Settings:
    """Settings with debug off, so 5xx messages are sanitized."""
    return Settings(
        app_env="production",
        app_debug=False,
        app_log_level="WARNING",
        upstream_api_key="test-key",
    )


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def admission(clock: FakeClock) -> AdmissionController:
    return AdmissionController(clock=clock)


@pytest.fixture
def call_service() -> FakeCallService:
    return FakeCallService()


@pytest.fixture
def analysis_service() -> DummyAnalysisService:
    return DummyAnalysisService()


@pytest.fixture
def gateway(
    call_service: FakeCallService,
    analysis_service: DummyAnalysisService,
    admission: AdmissionController,
) -> SessionGateway:
    """Gateway over fake upstream services with a controllable clock."""
    return SessionGateway(call_service, analysis_service, admission)


@pytest.fixture
def completed_call(call_service: FakeCallService) -> dict:
    """A completed pizza order call with a structured transcript."""
    return call_service.add_call(
        "call-done",
        status="completed",
        call_length=2.4,
        completed=True,
        concatenated_transcript=(
            "assistant: Hi, I'd like to order a pepperoni and a margherita for pickup.\n"
            "user: Sure. That's $32.50, ready in 20 minutes. Your order is confirmed."
        ),
        transcripts=[
            {"id": 1, "user": "assistant", "text": "Hi, I'd like to order a pepperoni and a margherita for pickup.",
             "created_at": "2024-05-01T12:00:00.000Z"},
            {"id": 2, "user": "user", "text": "Sure. That's $32.50, ready in 20 minutes. Your order is confirmed.",
             "created_at": "2024-05-01T12:00:05.000Z"},
        ],
    )


# =============================================================================
# FastAPI App Fixture
# =============================================================================

@pytest.fixture
def app(test_settings: Settings, gateway: SessionGateway):
    """Create a FastAPI app instance wired to the fake gateway."""
    # Import here to avoid circular imports
    from main import create_app

    return create_app(settings=test_settings, gateway=gateway)


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """Create a test client for the FastAPI app."""
    with TestClient(app) as c:
        yield c
