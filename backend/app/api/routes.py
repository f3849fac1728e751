"""
CallSync - REST API Routes

Endpoints for call placement, status polling, transcripts, analysis, and
the real-time event stream.

Architecture:
    All call operations flow through the SessionGateway, accessed via
    dependency injection from app.state. This ensures:
    - Admission control is applied per operation class
    - Validation messages are identical for every client
    - Upstream errors map onto one exception hierarchy
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from app.core.logging import LogContext
from app.core.rate_limit import client_identity
from app.telephony.gateway import SessionGateway

from .schemas import (
    AnalysisResponse,
    AnalyzeRequest,
    CreateCallRequest,
    CreateCallResponse,
    StopCallResponse,
    TranscriptResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["calls"])


SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


# =============================================================================
# Dependencies
# =============================================================================

def get_gateway(request: Request) -> SessionGateway:
    """Dependency to get the session gateway from app state."""
    return request.app.state.gateway


def get_caller(request: Request) -> str:
    """Caller identity used for admission keys."""
    return client_identity(
        request.client.host if request.client else None,
        forwarded_for=request.headers.get("x-forwarded-for"),
        real_ip=request.headers.get("x-real-ip"),
    )


# =============================================================================
# Calls
# =============================================================================

@router.get("/calls")
async def list_calls(
    limit: Optional[int] = Query(default=None),
    offset: Optional[int] = Query(default=None),
    status: Optional[str] = Query(default=None),
    gateway: SessionGateway = Depends(get_gateway),
    caller: str = Depends(get_caller),
):
    """List calls, newest first as ordered by the upstream service."""
    with LogContext(caller=caller):
        return await gateway.list_sessions(limit=limit, offset=offset, status=status, caller=caller)


@router.post("/calls", response_model=CreateCallResponse)
async def create_call(
    body: CreateCallRequest,
    gateway: SessionGateway = Depends(get_gateway),
    caller: str = Depends(get_caller),
):
    """
    Place an AI phone call.

    Rate limited to a handful of calls per caller every five minutes.
    """
    with LogContext(caller=caller):
        return await gateway.create_session(
            body.phone_number,
            body.task,
            body.options(),
            caller=caller,
        )


@router.get("/calls/{call_id}")
async def get_call(
    call_id: str,
    gateway: SessionGateway = Depends(get_gateway),
    caller: str = Depends(get_caller),
):
    """Call details. Sized for polling every 2.5 seconds."""
    with LogContext(session_id=call_id, caller=caller):
        return await gateway.get_status(call_id, caller=caller)


@router.post("/calls/{call_id}/stop", response_model=StopCallResponse)
async def stop_call(
    call_id: str,
    gateway: SessionGateway = Depends(get_gateway),
    caller: str = Depends(get_caller),
):
    with LogContext(session_id=call_id, caller=caller):
        return await gateway.stop_session(call_id, caller=caller)


@router.get("/calls/{call_id}/transcript", response_model=TranscriptResponse)
async def get_transcript(
    call_id: str,
    gateway: SessionGateway = Depends(get_gateway),
    caller: str = Depends(get_caller),
):
    with LogContext(session_id=call_id, caller=caller):
        return await gateway.get_transcript(call_id, caller=caller)


@router.post("/calls/{call_id}/analyze", response_model=AnalysisResponse)
async def analyze_call(
    call_id: str,
    body: Optional[AnalyzeRequest] = None,
    gateway: SessionGateway = Depends(get_gateway),
    caller: str = Depends(get_caller),
):
    """
    Analyze a completed call.

    Only calls in the ``completed`` status with a non-empty transcript can
    be analyzed.
    """
    body = body or AnalyzeRequest()
    with LogContext(session_id=call_id, caller=caller):
        result = await gateway.analyze_session(call_id, body.kind, body.questions, caller=caller)
    return result.model_dump()


@router.get("/calls/{call_id}/recording")
async def get_recording(
    call_id: str,
    gateway: SessionGateway = Depends(get_gateway),
    caller: str = Depends(get_caller),
):
    with LogContext(session_id=call_id, caller=caller):
        return await gateway.get_recording(call_id, caller=caller)


# =============================================================================
# Event Stream
# =============================================================================

@router.get("/events")
async def stream_events(
    callId: Optional[str] = Query(default=None),
    gateway: SessionGateway = Depends(get_gateway),
    caller: str = Depends(get_caller),
):
    """
    Server-sent events relayed from the upstream event stream.

    The first event is always either ``connection`` or, when the upstream
    stream cannot be opened, a single ``error`` (with status 502).
    """
    relay = gateway.open_event_stream(callId, caller=caller)
    opened = await relay.open()

    return StreamingResponse(
        relay.sse(),
        status_code=200 if opened else 502,
        media_type="text/event-stream",
        headers=SSE_HEADERS,
        background=BackgroundTask(relay.aclose),
    )
