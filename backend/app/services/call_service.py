"""
CallSync - Upstream Call Service

Client for the third-party call-placement API.

Architecture:
    - CallService protocol: what the gateway and relay need from upstream
    - HttpCallService: httpx-based implementation

Status mapping:
    - 404                      -> SessionNotFoundError
    - 429, 5xx, network errors -> UpstreamTransientError
    - other non-2xx            -> UpstreamError

Privacy:
    Destination numbers and the API key are never logged in cleartext.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Any, AsyncIterator, Optional, Protocol, runtime_checkable

import httpx

from app.core.exceptions import (
    SessionNotFoundError,
    StreamOpenError,
    UpstreamError,
    UpstreamTransientError,
)
from app.core.logging import get_logger, mask_phone_number
from app.telephony.models import CreateCallResult, UpstreamCallDetails

logger = get_logger(__name__)


# =============================================================================
# Protocols
# =============================================================================

@runtime_checkable
class UpstreamStream(Protocol):
    """An open upstream byte stream (httpx.Response satisfies this)."""

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        ...

    async def aclose(self) -> None:
        ...


@runtime_checkable
class CallService(Protocol):
    """Opaque request/response and byte-stream contract of the upstream."""

    @abstractmethod
    async def send_call(self, payload: dict) -> CreateCallResult:
        ...

    @abstractmethod
    async def get_call(self, call_id: str) -> UpstreamCallDetails:
        ...

    @abstractmethod
    async def stop_call(self, call_id: str) -> dict:
        ...

    @abstractmethod
    async def list_calls(
        self,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        status: Optional[str] = None,
    ) -> dict:
        ...

    @abstractmethod
    async def get_recording(self, call_id: str) -> dict:
        ...

    @abstractmethod
    async def open_event_stream(self, call_id: Optional[str] = None) -> UpstreamStream:
        ...


# =============================================================================
# HTTP Implementation
# =============================================================================

def _status_context(status_code: int) -> str:
    if status_code >= 500:
        return "Call service temporarily unavailable"
    if status_code == 429:
        return "Rate limit exceeded"
    if status_code == 401:
        return "Invalid API key"
    return "Request failed"


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or "Unknown error")
    return str(body)[:200]


def raise_for_upstream_status(response: httpx.Response, call_id: Optional[str] = None) -> None:
    """Map a non-2xx upstream response to the exception hierarchy."""
    if response.is_success:
        return

    status_code = response.status_code
    message = f"{_status_context(status_code)}: {status_code} - {_error_message(response)}"

    if status_code == 404:
        raise SessionNotFoundError(
            f"Call not found: {call_id}" if call_id else "Call not found",
            upstream_status=status_code,
        )
    if status_code == 429 or status_code >= 500:
        raise UpstreamTransientError(message, upstream_status=status_code)
    raise UpstreamError(message, upstream_status=status_code)


class HttpCallService:
    """
    httpx-backed upstream call service.

    Usage:
        async with httpx.AsyncClient() as client:
            service = HttpCallService(client, base_url, api_key)
            details = await service.get_call("abc123")
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 30.0,
        create_timeout_seconds: float = 60.0,
        stop_timeout_seconds: float = 15.0,
        user_agent: str = "callsync-backend/0.1",
    ):
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._create_timeout = create_timeout_seconds
        self._stop_timeout = stop_timeout_seconds
        self._user_agent = user_agent

    def _headers(self, accept: str = "application/json") -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "Accept": accept,
            "User-Agent": self._user_agent,
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        timeout: float,
        call_id: Optional[str] = None,
        **kwargs: Any,
    ) -> Any:
        url = f"{self._base_url}{path}"
        try:
            response = await self._client.request(
                method,
                url,
                headers=self._headers(),
                timeout=timeout,
                **kwargs,
            )
        except httpx.TimeoutException as e:
            raise UpstreamTransientError(f"Request timeout after {timeout:g}s") from e
        except httpx.HTTPError as e:
            raise UpstreamTransientError(f"Network error contacting call service: {e}") from e

        raise_for_upstream_status(response, call_id)

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError("Call service returned invalid JSON", response.status_code) from e

    async def send_call(self, payload: dict) -> CreateCallResult:
        """Place a call. Optional parameters with empty values are dropped."""
        body = {
            key: value for key, value in payload.items()
            if value is not None and value != "" and value != []
        }
        logger.info(
            "Placing call to %s",
            mask_phone_number(body.get("phone_number")),
            data={"options": sorted(k for k in body if k not in ("phone_number", "task"))},
        )
        data = await self._request("POST", "/v1/calls", timeout=self._create_timeout, json=body)
        try:
            return CreateCallResult.model_validate(data)
        except ValueError as e:
            raise UpstreamError(f"Unexpected call creation payload: {e}") from e

    async def get_call(self, call_id: str) -> UpstreamCallDetails:
        data = await self._request(
            "GET", f"/v1/calls/{call_id}", timeout=self._timeout, call_id=call_id
        )
        try:
            return UpstreamCallDetails.model_validate(data)
        except ValueError as e:
            raise UpstreamError(f"Unexpected call details payload: {e}") from e

    async def stop_call(self, call_id: str) -> dict:
        return await self._request(
            "POST", f"/v1/calls/{call_id}/stop", timeout=self._stop_timeout, call_id=call_id
        )

    async def list_calls(
        self,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        status: Optional[str] = None,
    ) -> dict:
        params = {}
        if limit:
            params["limit"] = limit
        if offset:
            params["offset"] = offset
        if status:
            params["status"] = status
        return await self._request("GET", "/v1/calls", timeout=self._timeout, params=params)

    async def get_recording(self, call_id: str) -> dict:
        return await self._request(
            "GET", f"/v1/calls/{call_id}/recording", timeout=self._timeout, call_id=call_id
        )

    async def open_event_stream(self, call_id: Optional[str] = None) -> httpx.Response:
        """
        Open the upstream event stream.

        Resolves once response headers arrive; the body streams lazily via
        ``aiter_bytes()``. The caller owns the response and must ``aclose()`` it.

        Raises:
            StreamOpenError: On network failure or a non-2xx response
        """
        path = f"/v1/calls/{call_id}/events" if call_id else "/v1/events"
        headers = self._headers(accept="text/event-stream")
        headers["Cache-Control"] = "no-cache"

        request = self._client.build_request(
            "GET",
            f"{self._base_url}{path}",
            headers=headers,
            timeout=httpx.Timeout(self._timeout, read=None),
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise StreamOpenError(f"Failed to connect to event stream: {e}") from e

        if not response.is_success:
            error_bytes = await response.aread()
            await response.aclose()
            raise StreamOpenError(
                f"Call service error: {response.status_code} - "
                f"{error_bytes[:200].decode('utf-8', errors='replace')}",
                upstream_status=response.status_code,
            )
        return response


def create_call_service(settings, client: httpx.AsyncClient) -> HttpCallService:
    """Build the upstream call service from application settings."""
    if not settings.upstream_api_key:
        logger.warning("UPSTREAM_API_KEY is not set; upstream calls will be rejected")
    return HttpCallService(
        client=client,
        base_url=settings.upstream_base_url,
        api_key=settings.upstream_api_key,
        timeout_seconds=settings.upstream_timeout_seconds,
        create_timeout_seconds=settings.upstream_create_timeout_seconds,
        stop_timeout_seconds=settings.upstream_stop_timeout_seconds,
        user_agent=settings.upstream_user_agent,
    )
