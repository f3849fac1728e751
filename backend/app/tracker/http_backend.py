"""
CallSync - HTTP Session Backend

SessionBackend implementation that talks to the CallSync REST API, for
trackers running outside the server process.

Error mapping:
    400 -> ValidationError (server message passed through)
    404 -> SessionNotFoundError
    429 -> AdmissionDeniedError (decision rebuilt from the response)
    any other failure -> UpstreamTransientError
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

import httpx

from app.core.exceptions import (
    AdmissionDeniedError,
    SessionNotFoundError,
    UpstreamTransientError,
    ValidationError,
)
from app.core.rate_limit import RateLimitDecision

logger = logging.getLogger(__name__)


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or response.reason_phrase)
    return response.reason_phrase


def _decision_from_response(response: httpx.Response) -> RateLimitDecision:
    headers = response.headers

    def _int(name: str, default: int = 0) -> int:
        try:
            return int(headers.get(name, default))
        except (TypeError, ValueError):
            return default

    reset_ms = 0.0
    reset = headers.get("X-RateLimit-Reset")
    if reset:
        try:
            reset_ms = datetime.fromisoformat(reset.replace("Z", "+00:00")).timestamp() * 1000.0
        except ValueError:
            reset_ms = 0.0

    retry_after = _int("Retry-After") or None
    return RateLimitDecision(
        allowed=False,
        limit=_int("X-RateLimit-Limit"),
        remaining=_int("X-RateLimit-Remaining"),
        reset_at_ms=reset_ms,
        retry_after_seconds=retry_after,
    )


class HttpSessionBackend:
    """
    Usage:
        async with httpx.AsyncClient(base_url="http://localhost:8000") as client:
            tracker = SessionTracker(HttpSessionBackend(client))
    """

    def __init__(self, client: httpx.AsyncClient, prefix: str = "/api"):
        self._client = client
        self._prefix = prefix.rstrip("/")

    async def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, f"{self._prefix}{path}", **kwargs)
        except httpx.HTTPError as e:
            raise UpstreamTransientError(f"Request to {path} failed: {e}") from e

        if response.is_success:
            try:
                return response.json()
            except ValueError as e:
                raise UpstreamTransientError(f"Invalid JSON from {path}") from e

        status_code = response.status_code
        message = _error_text(response)
        if status_code == 400:
            raise ValidationError(message)
        if status_code == 404:
            raise SessionNotFoundError(message, upstream_status=status_code)
        if status_code == 429:
            raise AdmissionDeniedError(_decision_from_response(response), message)
        raise UpstreamTransientError(message, upstream_status=status_code)

    async def create_session(self, destination: str, task: str, options: Optional[dict] = None) -> dict:
        body = {**(options or {}), "phone_number": destination, "task": task}
        return await self._call("POST", "/calls", json=body)

    async def get_status(self, session_id: str) -> dict:
        return await self._call("GET", f"/calls/{session_id}")

    async def get_transcript(self, session_id: str) -> dict:
        return await self._call("GET", f"/calls/{session_id}/transcript")

    async def stop_session(self, session_id: str) -> dict:
        return await self._call("POST", f"/calls/{session_id}/stop")

    async def analyze_session(
        self,
        session_id: str,
        kind: str = "general",
        questions: Optional[list] = None,
    ) -> dict:
        body: dict = {"kind": kind}
        if questions:
            body["questions"] = questions
        return await self._call("POST", f"/calls/{session_id}/analyze", json=body)
