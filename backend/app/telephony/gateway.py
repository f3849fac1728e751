"""
CallSync - Session Gateway

Thin boundary in front of the upstream call and analysis services.

Every operation:
    1. Applies admission control for its operation class
    2. Validates input locally (ValidationError on rejection)
    3. Forwards to the upstream collaborator

Operation classes:
    create_session   -> critical
    get_status       -> polling
    get_transcript   -> polling
    stop_session     -> standard
    analyze_session  -> strict
    list_sessions    -> permissive
    get_recording    -> default
    open_event_stream-> permissive

The admission key is "{caller}:{path}" where path is the REST path of the
operation, so polling one call does not consume another call's budget.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

from app.core.exceptions import AdmissionDeniedError, UpstreamError, ValidationError
from app.core.logging import mask_session_id
from app.core.rate_limit import (
    AdmissionController,
    admission_key,
    create_admission_controller,
    get_profile,
)
from app.services.analysis import (
    ANALYSIS_KINDS,
    AnalysisService,
    summarize_pizza_order,
)

from .models import AnalysisResult, CallStatus, isoformat_z, utcnow
from .relay import EventRelay
from .transcript import entries_from_concatenated, entries_from_fragments, transcript_to_text
from .validation import ValidationLimits, validate_destination, validate_options, validate_task

if TYPE_CHECKING:
    from app.services.call_service import CallService

logger = logging.getLogger(__name__)


DEFAULT_CALLER = "anonymous"
LIST_LIMIT_MAX = 1000


class SessionGateway:
    """
    Validation and admission boundary for call sessions.

    Satisfies the tracker's SessionBackend protocol when used in-process.

    Usage:
        gateway = SessionGateway(call_service, analysis_service, AdmissionController())
        created = await gateway.create_session("+15551234567", "Order two pizzas", caller=ip)
    """

    def __init__(
        self,
        call_service: CallService,
        analysis_service: AnalysisService,
        admission: Optional[AdmissionController] = None,
        limits: ValidationLimits = ValidationLimits(),
        rate_limit_enabled: bool = True,
    ):
        self._calls = call_service
        self._analysis = analysis_service
        self._admission = admission if admission is not None else AdmissionController()
        self._limits = limits
        self._rate_limit_enabled = rate_limit_enabled

    @property
    def admission(self) -> AdmissionController:
        return self._admission

    @property
    def analysis_backend(self) -> str:
        return self._analysis.backend_id

    def _admit(self, caller: str, path: str, profile_name: str) -> None:
        if not self._rate_limit_enabled:
            return
        profile = get_profile(profile_name)
        decision = self._admission.check_profile(admission_key(caller, path), profile)
        if not decision.allowed:
            logger.warning(
                "Admission denied: profile=%s, path=%s, retry_after=%ss",
                profile.name,
                path,
                decision.retry_after_seconds,
            )
            raise AdmissionDeniedError(decision)

    @staticmethod
    def _require_id(session_id: Any) -> str:
        if not session_id or not str(session_id).strip():
            raise ValidationError("Call ID is required")
        return str(session_id).strip()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def create_session(
        self,
        destination: Any,
        task: Any,
        options: Optional[dict] = None,
        *,
        caller: str = DEFAULT_CALLER,
    ) -> dict:
        """
        Place a call.

        Returns:
            {"id", "status", "message"?}; extra upstream fields are kept
        """
        self._admit(caller, "/api/calls", "critical")

        number = validate_destination(destination)
        sanitized_task = validate_task(task, self._limits)
        checked = validate_options(options or {}, self._limits)

        result = await self._calls.send_call({
            **checked,
            "phone_number": number,
            "task": sanitized_task,
        })

        if not result.call_id:
            raise UpstreamError(result.message or "Call was not created")

        logger.info("Call created: id=%s, status=%s", mask_session_id(result.call_id), result.status)
        response = result.model_dump(exclude_none=True)
        response["id"] = result.call_id
        response["status"] = CallStatus.QUEUED.value
        response["upstream_status"] = result.status
        return response

    async def get_status(self, session_id: str, *, caller: str = DEFAULT_CALLER) -> dict:
        """Upstream call details, unknown fields passed through."""
        session_id = self._require_id(session_id)
        self._admit(caller, f"/api/calls/{session_id}", "polling")

        details = await self._calls.get_call(session_id)
        return details.to_response()

    async def get_transcript(self, session_id: str, *, caller: str = DEFAULT_CALLER) -> dict:
        """
        Normalized transcript for a call.

        Structured fragments win over the concatenated string.
        """
        session_id = self._require_id(session_id)
        self._admit(caller, f"/api/calls/{session_id}/transcript", "polling")

        details = await self._calls.get_call(session_id)
        entries = entries_from_fragments(details.transcripts)
        if not entries:
            entries = entries_from_concatenated(details.concatenated_transcript)

        return {
            "call_id": details.call_id,
            "status": details.status,
            "entries": [entry.to_dict() for entry in entries],
            "concatenated_transcript": details.concatenated_transcript or transcript_to_text(entries),
            "metadata": {
                "call_length": details.call_length,
                "created_at": details.created_at,
                "completed": details.completed,
            },
        }

    async def stop_session(self, session_id: str, *, caller: str = DEFAULT_CALLER) -> dict:
        session_id = self._require_id(session_id)
        self._admit(caller, f"/api/calls/{session_id}/stop", "standard")

        upstream = await self._calls.stop_call(session_id)
        logger.info("Call stopped: id=%s", mask_session_id(session_id))
        return {
            "id": session_id,
            "status": CallStatus.STOPPED.value,
            "message": upstream.get("message", "Call stopped") if isinstance(upstream, dict) else "Call stopped",
        }

    async def analyze_session(
        self,
        session_id: str,
        kind: str = "general",
        questions: Optional[list] = None,
        *,
        caller: str = DEFAULT_CALLER,
    ) -> AnalysisResult:
        """
        Analyze a completed call.

        Raises:
            ValidationError: Unknown kind, call not completed, or empty transcript
            AnalysisError: Analysis backend failure
        """
        session_id = self._require_id(session_id)
        self._admit(caller, f"/api/calls/{session_id}/analyze", "strict")

        if kind not in ANALYSIS_KINDS:
            raise ValidationError(
                f"Unsupported analysis type: {kind}. Use one of: {', '.join(ANALYSIS_KINDS)}"
            )
        if questions is not None and (
            not isinstance(questions, list) or not all(isinstance(q, str) for q in questions)
        ):
            raise ValidationError("Questions must be a list of strings")

        details = await self._calls.get_call(session_id)
        status = CallStatus.parse(details.status)
        if status is not CallStatus.COMPLETED:
            raise ValidationError(f"Cannot analyze incomplete call. Current status: {details.status}")

        transcript = details.concatenated_transcript
        if not transcript or not transcript.strip():
            transcript = transcript_to_text(entries_from_fragments(details.transcripts))
        if not transcript.strip():
            raise ValidationError("No transcript available for analysis")

        analysis = await self._analysis.analyze(
            transcript,
            kind=kind,
            metadata={
                "call_id": details.call_id,
                "duration": details.call_length,
                "status": details.status,
                "created_at": details.created_at,
            },
            questions=questions,
        )

        summary = summarize_pizza_order(analysis) if kind == "pizza_order" else analysis.get("summary")
        logger.info("Call analyzed: id=%s, kind=%s", mask_session_id(session_id), kind)
        return AnalysisResult(
            call_id=details.call_id,
            kind=kind,
            analysis=analysis,
            summary=summary,
            metadata={
                "backend": self._analysis.backend_id,
                "analyzed_at": isoformat_z(utcnow()),
                "transcript_length": len(transcript),
                "call_duration": details.call_length,
            },
        )

    # -------------------------------------------------------------------------
    # Supplementary operations
    # -------------------------------------------------------------------------

    async def list_sessions(
        self,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        status: Optional[str] = None,
        *,
        caller: str = DEFAULT_CALLER,
    ) -> dict:
        self._admit(caller, "/api/calls", "permissive")

        if limit is not None and not 1 <= limit <= LIST_LIMIT_MAX:
            raise ValidationError(f"Limit must be a number between 1 and {LIST_LIMIT_MAX}")
        if offset is not None and offset < 0:
            raise ValidationError("Offset must be a non-negative number")

        return await self._calls.list_calls(limit=limit, offset=offset, status=status or None)

    async def get_recording(self, session_id: str, *, caller: str = DEFAULT_CALLER) -> dict:
        session_id = self._require_id(session_id)
        self._admit(caller, f"/api/calls/{session_id}/recording", "default")
        return await self._calls.get_recording(session_id)

    def open_event_stream(
        self,
        session_id: Optional[str] = None,
        *,
        caller: str = DEFAULT_CALLER,
    ) -> EventRelay:
        """
        Admit and build a relay for the upstream event stream.

        Admission denial raises here; upstream failures surface as relay
        error events instead.
        """
        self._admit(caller, "/api/events", "permissive")
        return EventRelay(self._calls.open_event_stream, session_id=session_id or None)


def create_gateway(
    settings,
    call_service: CallService,
    analysis_service: AnalysisService,
    admission: Optional[AdmissionController] = None,
) -> SessionGateway:
    """Build the gateway from application settings."""
    return SessionGateway(
        call_service=call_service,
        analysis_service=analysis_service,
        admission=admission if admission is not None else create_admission_controller(settings),
        limits=ValidationLimits.from_settings(settings),
        rate_limit_enabled=settings.rate_limit_enabled,
    )
