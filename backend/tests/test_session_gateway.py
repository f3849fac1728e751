"""
CallSync - Session Gateway Tests

Tests for the validation and admission boundary.

Run with: pytest tests/test_session_gateway.py -v
"""

import pytest

from app.core.exceptions import (
    AdmissionDeniedError,
    SessionNotFoundError,
    ValidationError,
)
from app.core.rate_limit import AdmissionController
from app.services.analysis import DummyAnalysisService, PIZZA_ORDER_QUESTIONS
from app.telephony.gateway import SessionGateway
from app.telephony.models import AnalysisResult
from app.tracker import SessionTracker

from conftest import FailingAnalysisService, FakeCallService, FakeClock


TASK = "Call the pizza place and order two pepperoni pizzas for pickup."


class TestCreateSession:
    """Tests for call placement."""

    @pytest.mark.asyncio
    async def test_create_forwards_sanitized_payload(self, gateway: SessionGateway, call_service: FakeCallService):
        created = await gateway.create_session(
            " +1 (555) 123-4567 ",
            "<b>Order</b> two pizzas<script>alert('x')</script> please",
            {"max_duration": "12", "voice": "maya"},
        )

        assert created["id"] == "call-1"
        assert created["status"] == "queued"
        assert call_service.sent == [{
            "phone_number": "+1 (555) 123-4567",
            "task": "Order two pizzas please",
            "max_duration": 12,
            "voice": "maya",
        }]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("destination,task,options,message", [
        (None, TASK, {}, "Phone number is required"),
        ("12345", TASK, {}, "Invalid phone number format"),
        ("+15551234567", "", {}, "Task is required"),
        ("+15551234567", "too short", {}, "at least 10 characters"),
        ("+15551234567", "x" * 5001, {}, "less than 5000 characters"),
        ("+15551234567", TASK, {"max_duration": 31}, "Max duration must be between 1 and 30 minutes"),
        ("+15551234567", TASK, {"max_duration": "abc"}, "Max duration must be between 1 and 30 minutes"),
        ("+15551234567", TASK, {"temperature": 2.5}, "Temperature must be between 0 and 2"),
        ("+15551234567", TASK, {"temperature": True}, "Temperature must be between 0 and 2"),
    ])
    async def test_validation_rejections(self, gateway, call_service, destination, task, options, message):
        """Invalid input is rejected locally with a specific reason."""
        with pytest.raises(ValidationError, match=message):
            await gateway.create_session(destination, task, options)
        assert call_service.sent == []

    @pytest.mark.asyncio
    async def test_critical_profile_limits_creation(self, gateway: SessionGateway, clock: FakeClock):
        """Call creation is limited to five per five minutes per caller."""
        for _ in range(5):
            await gateway.create_session("+15551234567", TASK, caller="203.0.113.7")

        with pytest.raises(AdmissionDeniedError) as exc_info:
            await gateway.create_session("+15551234567", TASK, caller="203.0.113.7")
        assert exc_info.value.decision.limit == 5
        assert exc_info.value.decision.retry_after_seconds == 300

        # other callers are unaffected
        await gateway.create_session("+15551234567", TASK, caller="198.51.100.4")

        clock.advance(300.001)
        await gateway.create_session("+15551234567", TASK, caller="203.0.113.7")

    @pytest.mark.asyncio
    async def test_admission_checked_before_validation(self, gateway: SessionGateway):
        """Rejected requests still consume admission budget."""
        for _ in range(5):
            with pytest.raises(ValidationError):
                await gateway.create_session("bad", TASK)
        with pytest.raises(AdmissionDeniedError):
            await gateway.create_session("+15551234567", TASK)

    @pytest.mark.asyncio
    async def test_rate_limit_disabled(self, call_service: FakeCallService, clock: FakeClock):
        gateway = SessionGateway(
            call_service, DummyAnalysisService(), AdmissionController(clock=clock), rate_limit_enabled=False
        )
        for _ in range(10):
            await gateway.create_session("+15551234567", TASK)
        assert len(call_service.sent) == 10


class TestStatusAndTranscript:
    """Tests for read operations."""

    @pytest.mark.asyncio
    async def test_get_status_passes_through_upstream_fields(self, gateway, call_service):
        call_service.add_call("abc", status="in-progress", answered_by="human")
        details = await gateway.get_status("abc")

        assert details["status"] == "in-progress"
        assert details["answered_by"] == "human"

    @pytest.mark.asyncio
    async def test_get_status_not_found(self, gateway: SessionGateway):
        with pytest.raises(SessionNotFoundError):
            await gateway.get_status("missing")

    @pytest.mark.asyncio
    async def test_get_status_requires_id(self, gateway: SessionGateway):
        with pytest.raises(ValidationError, match="Call ID is required"):
            await gateway.get_status("  ")

    @pytest.mark.asyncio
    async def test_polling_budget_is_per_call(self, gateway, call_service):
        """Polling one call does not consume another call's budget."""
        call_service.add_call("a")
        call_service.add_call("b")
        for _ in range(50):
            await gateway.get_status("a")

        with pytest.raises(AdmissionDeniedError):
            await gateway.get_status("a")
        await gateway.get_status("b")

    @pytest.mark.asyncio
    async def test_transcript_from_fragments(self, gateway, completed_call):
        transcript = await gateway.get_transcript("call-done")

        assert [e["user"] for e in transcript["entries"]] == ["assistant", "user"]
        assert transcript["entries"][0]["timestamp"] == "2024-05-01T12:00:00.000Z"
        assert transcript["metadata"]["call_length"] == 2.4

    @pytest.mark.asyncio
    async def test_transcript_from_concatenated_string(self, gateway, call_service):
        call_service.add_call("c", status="in-progress", concatenated_transcript="assistant: Hello\nuser: Hi")
        transcript = await gateway.get_transcript("c")

        assert [(e["user"], e["text"]) for e in transcript["entries"]] == [("assistant", "Hello"), ("user", "Hi")]


class TestStopAndAnalyze:
    """Tests for stop and analysis."""

    @pytest.mark.asyncio
    async def test_stop(self, gateway, call_service):
        call_service.add_call("abc", status="in-progress")
        result = await gateway.stop_session("abc")

        assert result["status"] == "stopped"
        assert call_service.stopped == ["abc"]

    @pytest.mark.asyncio
    async def test_analyze_pizza_order(self, gateway, completed_call):
        result = await gateway.analyze_session("call-done", "pizza_order")

        assert isinstance(result, AnalysisResult)
        assert result.kind == "pizza_order"
        assert set(result.analysis) == set(PIZZA_ORDER_QUESTIONS)
        assert result.analysis["What is the total cost?"] == "$32.50"
        assert "Cost: $32.50" in result.summary
        assert result.metadata["backend"] == "dummy-analysis-v0.1"

    @pytest.mark.asyncio
    async def test_analyze_general(self, gateway, completed_call):
        result = await gateway.analyze_session("call-done", "general", ["Was the order placed?"])

        assert result.analysis["outcome"] == "successful"
        assert result.analysis["answers"] == {"Was the order placed?": "Unclear"}
        assert result.summary == result.analysis["summary"]

    @pytest.mark.asyncio
    async def test_analyze_incomplete_call_rejected(self, gateway, call_service):
        call_service.add_call("live", status="in-progress", concatenated_transcript="assistant: Hi")

        with pytest.raises(ValidationError, match="Cannot analyze incomplete call. Current status: in-progress"):
            await gateway.analyze_session("live", "general")

    @pytest.mark.asyncio
    async def test_analyze_empty_transcript_rejected(self, gateway, call_service):
        call_service.add_call("quiet", status="completed")

        with pytest.raises(ValidationError, match="No transcript available for analysis"):
            await gateway.analyze_session("quiet", "general")

    @pytest.mark.asyncio
    async def test_analyze_unknown_kind(self, gateway, completed_call):
        with pytest.raises(ValidationError, match="Unsupported analysis type"):
            await gateway.analyze_session("call-done", "sentiment")

    @pytest.mark.asyncio
    async def test_analysis_result_is_immutable(self, gateway, completed_call):
        result = await gateway.analyze_session("call-done", "general")
        with pytest.raises(Exception):
            result.summary = "changed"


class TestSupplementaryOperations:
    """Tests for listing, recordings and event streams."""

    @pytest.mark.asyncio
    async def test_list_sessions(self, gateway, call_service):
        call_service.add_call("a", status="completed")
        call_service.add_call("b", status="failed")

        result = await gateway.list_sessions(limit=10, status="completed")
        assert [c["call_id"] for c in result["calls"]] == ["a"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit,offset,message", [
        (0, None, "Limit must be a number between 1 and 1000"),
        (1001, None, "Limit must be a number between 1 and 1000"),
        (10, -1, "Offset must be a non-negative number"),
    ])
    async def test_list_sessions_bounds(self, gateway, limit, offset, message):
        with pytest.raises(ValidationError, match=message):
            await gateway.list_sessions(limit=limit, offset=offset)

    @pytest.mark.asyncio
    async def test_get_recording(self, gateway, call_service):
        call_service.add_call("abc", status="completed")
        assert (await gateway.get_recording("abc"))["url"].endswith("abc.mp3")

    @pytest.mark.asyncio
    async def test_open_event_stream_returns_relay(self, gateway, call_service):
        call_service.stream_chunks = [b'{"status": "ringing"}\n']
        relay = gateway.open_event_stream("abc")
        events = [event async for event in relay.events()]

        assert relay.session_id == "abc"
        assert [e.type for e in events] == ["connection", "call_event"]

    @pytest.mark.asyncio
    async def test_analysis_backend_id(self, call_service):
        gateway = SessionGateway(call_service, FailingAnalysisService())
        assert gateway.analysis_backend == "failing"


class TestTrackerOverGateway:
    """The gateway satisfies the tracker's backend protocol in-process."""

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, gateway: SessionGateway, call_service: FakeCallService):
        tracker = SessionTracker(gateway, poll_interval=3600, analysis_kind="pizza_order")
        try:
            session = await tracker.start("+15551234567", TASK)
            call_service.calls[session.id].update(
                status="completed",
                concatenated_transcript="assistant: One pepperoni please.\nuser: Confirmed, $15.00, ready in 15 minutes.",
            )

            assert await tracker.poll_once()
            await tracker.drain()

            assert tracker.session.status.value == "completed"
            assert len(tracker.transcript) == 2
            assert tracker.session.analysis.kind == "pizza_order"
            assert tracker.session.analysis.analysis["What is the estimated pickup time?"] == "15 minutes"
        finally:
            await tracker.aclose()

    @pytest.mark.asyncio
    async def test_analysis_failure_is_non_critical(self, call_service: FakeCallService, clock: FakeClock):
        gateway = SessionGateway(call_service, FailingAnalysisService(), AdmissionController(clock=clock))
        tracker = SessionTracker(gateway, poll_interval=3600)
        try:
            session = await tracker.start("+15551234567", TASK)
            call_service.calls[session.id].update(status="completed", concatenated_transcript="assistant: Hi")

            await tracker.poll_once()
            await tracker.drain()

            assert tracker.session.status.value == "completed"
            assert tracker.session.analysis is None
        finally:
            await tracker.aclose()
