"""
CallSync - Event Relay

Republishes one upstream event stream to one downstream consumer as
server-sent events.

Flow:
    open() -> "connection" event -> "call_event" per upstream frame -> close

Upstream frames are newline-delimited JSON, optionally carrying an SSE
``data:`` prefix. Anything else on the wire is skipped.

Failure policy:
    - Opening upstream fails  -> exactly one "error" event, nothing else
    - Read error mid-stream   -> one "error" event, then close
    - Consumer disconnects    -> upstream reader released, debug log only
    No automatic reconnect; the consumer owns reconnection.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from app.core.exceptions import CallSyncError
from app.core.logging import mask_session_id

from .models import isoformat_z, utcnow

logger = logging.getLogger(__name__)


StreamOpener = Callable[[Optional[str]], Awaitable[Any]]
"""Async callable returning an object with ``aiter_bytes()`` and ``aclose()``."""

STREAM_LOST_MESSAGE = "Stream connection lost"
CONNECTED_MESSAGE = "Connected to event stream"


class RelayState(str, Enum):
    """Lifecycle of one relay connection."""
    OPEN = "open"
    DRAINING = "draining"
    CLOSED = "closed"


@dataclass(frozen=True)
class RelayEvent:
    """One event delivered downstream."""
    type: str
    timestamp: str
    call_id: Optional[str] = None
    data: Any = None
    message: Optional[str] = None

    def to_dict(self) -> dict:
        payload: dict = {"type": self.type, "timestamp": self.timestamp}
        if self.call_id is not None:
            payload["callId"] = self.call_id
        if self.message is not None:
            payload["message"] = self.message
        if self.data is not None:
            payload["data"] = self.data
        return payload

    def to_sse(self) -> str:
        return f"data: {json.dumps(self.to_dict())}\n\n"


def parse_frame(line: str) -> Optional[Any]:
    """
    Parse one upstream line.

    Returns the decoded JSON object/array, or None when the line is not an
    event payload.
    """
    candidate = line.strip()
    if candidate.startswith("data:"):
        candidate = candidate[len("data:"):].strip()
    if not candidate or candidate[0] not in "{[":
        return None
    try:
        return json.loads(candidate)
    except ValueError:
        return None


@dataclass
class _LineBuffer:
    """Splits decoded chunks into complete lines, keeping the partial tail."""
    pending: str = ""

    def feed(self, text: str) -> list[str]:
        self.pending += text
        *complete, self.pending = self.pending.split("\n")
        return complete

    def flush(self) -> list[str]:
        tail, self.pending = self.pending, ""
        return [tail] if tail.strip() else []


class EventRelay:
    """
    One relay per downstream connection.

    Usage:
        relay = EventRelay(call_service.open_event_stream, session_id="abc123")
        async for chunk in relay.sse():
            yield chunk

    ``open()`` may be awaited ahead of iteration so the HTTP layer can pick
    a status code; ``events()`` opens lazily otherwise.
    """

    def __init__(self, source: StreamOpener, session_id: Optional[str] = None):
        self._source = source
        self._session_id = session_id
        self._upstream: Any = None
        self._open_error: Optional[str] = None
        self._opened = False
        self.state = RelayState.OPEN

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def failed_to_open(self) -> bool:
        return self._open_error is not None

    def _now(self) -> str:
        return isoformat_z(utcnow())

    async def open(self) -> bool:
        """
        Connect upstream. Never raises.

        Returns:
            True if the upstream stream is open
        """
        if self._opened:
            return self._upstream is not None
        self._opened = True

        try:
            self._upstream = await self._source(self._session_id)
        except CallSyncError as e:
            self._open_error = e.message
        except Exception as e:
            self._open_error = str(e) or "Failed to connect to event stream"

        if self._open_error is not None:
            logger.error(
                "Event stream open failed (call=%s): %s",
                mask_session_id(self._session_id) or "all",
                self._open_error,
            )
            self.state = RelayState.CLOSED
            return False

        logger.info("Event stream opened (call=%s)", mask_session_id(self._session_id) or "all")
        return True

    async def events(self) -> AsyncIterator[RelayEvent]:
        """Yield relay events until upstream ends, fails, or the consumer stops."""
        if not await self.open():
            yield RelayEvent(type="error", timestamp=self._now(), message=self._open_error)
            return

        yield RelayEvent(
            type="connection",
            timestamp=self._now(),
            call_id=self._session_id or "all",
            message=CONNECTED_MESSAGE,
        )

        buffer = _LineBuffer()
        try:
            async for chunk in self._upstream.aiter_bytes():
                if isinstance(chunk, bytes):
                    chunk = chunk.decode("utf-8", errors="replace")
                lines = buffer.feed(chunk)
                if not lines:
                    continue
                # one timestamp per read batch
                batch_ts = self._now()
                for line in lines:
                    event = self._to_event(line, batch_ts)
                    if event is not None:
                        yield event

            self.state = RelayState.DRAINING
            batch_ts = self._now()
            for line in buffer.flush():
                event = self._to_event(line, batch_ts)
                if event is not None:
                    yield event
        except Exception as e:
            logger.error("Event stream error: %s", str(e))
            self.state = RelayState.DRAINING
            yield RelayEvent(type="error", timestamp=self._now(), message=STREAM_LOST_MESSAGE)
        finally:
            await self._release()

    async def sse(self) -> AsyncIterator[str]:
        """``events()`` rendered as SSE ``data:`` frames."""
        async for event in self.events():
            yield event.to_sse()

    async def aclose(self) -> None:
        """Release the upstream reader without iterating."""
        await self._release()

    def _to_event(self, line: str, timestamp: str) -> Optional[RelayEvent]:
        payload = parse_frame(line)
        if payload is None:
            return None
        return RelayEvent(
            type="call_event",
            timestamp=timestamp,
            call_id=self._session_id,
            data=payload,
        )

    async def _release(self) -> None:
        if self.state is RelayState.CLOSED:
            return
        self.state = RelayState.CLOSED
        upstream, self._upstream = self._upstream, None
        if upstream is None:
            return
        try:
            await upstream.aclose()
        except Exception as e:
            logger.debug("Upstream reader close failed: %s", str(e))
        logger.debug("Event stream closed (call=%s)", mask_session_id(self._session_id) or "all")
