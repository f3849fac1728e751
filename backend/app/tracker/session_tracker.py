"""
CallSync - Session Tracker

Client-side state machine that follows one call from placement to a
terminal status by polling the session backend.

Phases:
    idle -> starting -> active{queued|ringing|in-progress}
         -> terminal{completed|failed|no-answer|busy|cancelled|stopped|unknown}
    reset() returns to idle from anywhere.

Concurrency model:
    Everything runs on one event loop, so no locks. The only suspension
    points are backend calls and the poll interval sleep. Each polling run
    owns a PollToken; after every await the tick re-checks that the token
    is live, the tracked session id is unchanged, and the phase is still
    active. A response that fails the check is dropped without touching
    any field.

    stop() and reset() are synchronous: the token is cancelled and the
    timer task cancelled before they return. A request already in flight
    may still complete, and its result is discarded by the guard.

Side effects:
    - stop() sends a detached stop notification whose outcome is only logged
    - reaching "completed" triggers exactly one analysis request, whose
      failure is only logged
"""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Coroutine, Optional, Protocol, runtime_checkable

from app.core.exceptions import (
    CallSyncError,
    SessionNotFoundError,
    UpstreamError,
    ValidationError,
)
from app.core.logging import mask_session_id
from app.telephony.models import (
    AnalysisResult,
    CallSession,
    CallStatus,
    TranscriptEntry,
    isoformat_z,
    utcnow,
)
from app.telephony.transcript import (
    entries_from_concatenated,
    entries_from_fragments,
    merge_monotonic,
)

logger = logging.getLogger(__name__)


DEFAULT_POLL_INTERVAL = 2.5

# Statuses for which the transcript sub-resource is worth fetching
TRANSCRIPT_STATUSES = frozenset({CallStatus.IN_PROGRESS, CallStatus.COMPLETED})


class TrackerPhase(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    TERMINAL = "terminal"


@dataclass
class PollToken:
    """
    Cancellation token for one polling run.

    Ticks are numbered as they are issued; a response is applied only if no
    later-issued tick has been applied already.
    """
    session_id: str
    cancelled: bool = False
    issued: int = 0
    applied: int = 0

    def next_sequence(self) -> int:
        self.issued += 1
        return self.issued

    def is_current(self, sequence: int) -> bool:
        return not self.cancelled and sequence > self.applied

    def cancel(self) -> None:
        self.cancelled = True


@runtime_checkable
class SessionBackend(Protocol):
    """What the tracker needs from the session gateway."""

    @abstractmethod
    async def create_session(self, destination: str, task: str, options: Optional[dict] = None) -> dict:
        ...

    @abstractmethod
    async def get_status(self, session_id: str) -> dict:
        ...

    @abstractmethod
    async def get_transcript(self, session_id: str) -> dict:
        ...

    @abstractmethod
    async def stop_session(self, session_id: str) -> dict:
        ...

    @abstractmethod
    async def analyze_session(self, session_id: str, kind: str = "general", questions: Optional[list] = None) -> Any:
        ...


class SessionTracker:
    """
    Tracks a single active call session.

    Usage:
        tracker = SessionTracker(gateway, poll_interval=2.5)
        await tracker.start("+15551234567", "Order two pizzas for pickup")
        ...
        tracker.stop()
        await tracker.aclose()
    """

    def __init__(
        self,
        backend: SessionBackend,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        analysis_kind: str = "pizza_order",
    ):
        self._backend = backend
        self._poll_interval = poll_interval
        self._analysis_kind = analysis_kind

        self._phase = TrackerPhase.IDLE
        self._session: Optional[CallSession] = None
        self._token: Optional[PollToken] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()
        self._generation = 0
        self._analysis_requested_for: Optional[str] = None

        self.error_message: Optional[str] = None

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def phase(self) -> TrackerPhase:
        return self._phase

    @property
    def session(self) -> Optional[CallSession]:
        return self._session

    @property
    def status(self) -> Optional[CallStatus]:
        return self._session.status if self._session else None

    @property
    def transcript(self) -> list[TranscriptEntry]:
        return list(self._session.transcript) if self._session else []

    @property
    def is_polling(self) -> bool:
        return self._token is not None and not self._token.cancelled

    @property
    def is_busy(self) -> bool:
        return self._phase in (TrackerPhase.STARTING, TrackerPhase.ACTIVE)

    @property
    def can_start(self) -> bool:
        return not self.is_busy

    def snapshot(self) -> dict:
        """Serializable view of the tracker for UIs and logs."""
        session = None
        if self._session is not None:
            session = {
                "id": self._session.id,
                "status": self._session.status.value,
                "transcript": [entry.to_dict() for entry in self._session.transcript],
                "created_at": isoformat_z(self._session.created_at),
                "ended_at": isoformat_z(self._session.ended_at),
                "analysis": self._session.analysis.model_dump() if self._session.analysis else None,
            }
        return {
            "phase": self._phase.value,
            "session": session,
            "is_polling": self.is_polling,
            "error_message": self.error_message,
        }

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def start(
        self,
        destination: str,
        task: str,
        options: Optional[dict] = None,
    ) -> Optional[CallSession]:
        """
        Create a session and begin polling.

        Returns:
            The new session, or None if the start was ignored because a
            session is already starting/active or the tracker was reset
            while the create request was in flight.

        Raises:
            ValidationError: Missing destination or task
            CallSyncError: Propagated from the backend create call
        """
        if self.is_busy:
            logger.info("Start ignored: tracker is %s", self._phase.value)
            return None

        if not destination or not str(destination).strip():
            raise ValidationError("Phone number is required")
        if not task or not str(task).strip():
            raise ValidationError("Task is required")

        self._generation += 1
        generation = self._generation
        self._phase = TrackerPhase.STARTING
        self._session = None
        self._analysis_requested_for = None
        self.error_message = None

        try:
            created = await self._backend.create_session(
                str(destination).strip(), str(task).strip(), dict(options or {})
            )
        except Exception as e:
            if generation == self._generation:
                self._phase = TrackerPhase.IDLE
                self.error_message = e.message if isinstance(e, CallSyncError) else str(e)
            logger.warning("Call creation failed: %s", str(e))
            raise

        session_id = created.get("id") or created.get("call_id")

        if generation != self._generation:
            logger.info("Tracker reset during call creation, discarding late session")
            if session_id:
                self._notify_stop(session_id)
            return None

        if not session_id:
            self._phase = TrackerPhase.IDLE
            self.error_message = "Call service returned no call id"
            raise UpstreamError(self.error_message)

        self._session = CallSession(id=session_id, status=CallStatus.QUEUED)
        self._phase = TrackerPhase.ACTIVE
        logger.info("Tracking call %s", mask_session_id(session_id))
        self._start_polling(session_id)
        return self._session

    def stop(self) -> bool:
        """
        Stop the active call.

        Polling halts and the status becomes ``stopped`` before this returns.
        The upstream stop request runs detached and never changes local state.

        Returns:
            True if an active session was stopped
        """
        if self._phase is not TrackerPhase.ACTIVE or self._session is None:
            logger.debug("Stop ignored: tracker is %s", self._phase.value)
            return False

        session_id = self._session.id
        self._halt_polling()
        self._finish(CallStatus.STOPPED)
        logger.info("Call %s stopped locally", mask_session_id(session_id))
        self._notify_stop(session_id)
        return True

    def reset(self) -> None:
        """Discard the session and return to idle. Safe from any phase."""
        self._generation += 1
        self._halt_polling()
        self._session = None
        self._analysis_requested_for = None
        self._phase = TrackerPhase.IDLE
        self.error_message = None

    async def poll_once(self) -> bool:
        """
        Run one guarded tick now.

        Returns:
            True if the response was applied
        """
        token = self._token
        if token is None:
            return False
        return await self._tick(token)

    async def drain(self) -> None:
        """Wait for detached stop/analysis tasks to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        self.reset()
        await self.drain()

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    def _guard(self, token: PollToken, sequence: Optional[int] = None) -> bool:
        return (
            not token.cancelled
            and (sequence is None or token.is_current(sequence))
            and self._session is not None
            and self._session.id == token.session_id
            and self._phase is TrackerPhase.ACTIVE
        )

    def _start_polling(self, session_id: str) -> None:
        self._halt_polling()
        token = PollToken(session_id)
        self._token = token
        self._poll_task = asyncio.create_task(
            self._poll_loop(token), name=f"poll-{mask_session_id(session_id)}"
        )

    def _halt_polling(self) -> None:
        if self._token is not None:
            self._token.cancel()
            self._token = None
        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done():
            task.cancel()
            self._track(task)

    async def _poll_loop(self, token: PollToken) -> None:
        while self._guard(token):
            await asyncio.sleep(self._poll_interval)
            if not self._guard(token):
                break
            # a cancelled loop leaves the tick running; the guard discards it
            tick = self._spawn(self._tick(token))
            try:
                await asyncio.shield(tick)
            except Exception:
                logger.exception("Poll tick failed for call %s", mask_session_id(token.session_id))

    async def _tick(self, token: PollToken) -> bool:
        if not self._guard(token):
            return False

        session_id = token.session_id
        sequence = token.next_sequence()
        try:
            details = await self._backend.get_status(session_id)
        except SessionNotFoundError:
            if not self._guard(token, sequence):
                return False
            logger.warning("Call %s not found upstream, tracking stopped", mask_session_id(session_id))
            token.applied = sequence
            self._halt_polling()
            self._finish(CallStatus.UNKNOWN)
            return True
        except Exception as e:
            logger.warning("Status poll failed for call %s: %s", mask_session_id(session_id), str(e))
            return False

        if not self._guard(token, sequence):
            return False

        if not isinstance(details, dict):
            logger.warning(
                "Malformed status payload for call %s (%s), tick skipped",
                mask_session_id(session_id),
                type(details).__name__,
            )
            return False

        status = CallStatus.parse(details.get("status"))
        if status is None:
            logger.warning("Unrecognized call status %r, tick skipped", details.get("status"))
            return False

        structured = None
        if status in TRANSCRIPT_STATUSES:
            structured = await self._fetch_transcript(session_id)
            if not self._guard(token, sequence):
                return False

        # no awaits past this point
        token.applied = sequence
        if status is not self._session.status:
            logger.info(
                "Call %s status: %s -> %s",
                mask_session_id(session_id),
                self._session.status.value,
                status.value,
            )
            self._session.status = status

        self._merge_transcript(structured, details)

        if status.is_terminal:
            self._halt_polling()
            self._finish(status)
            if status is CallStatus.COMPLETED:
                self._trigger_analysis(session_id)
        return True

    async def _fetch_transcript(self, session_id: str) -> Optional[list[TranscriptEntry]]:
        try:
            payload = await self._backend.get_transcript(session_id)
        except Exception as e:
            logger.debug("Transcript fetch failed for call %s: %s", mask_session_id(session_id), str(e))
            return None
        if not isinstance(payload, dict):
            logger.debug("Malformed transcript payload for call %s", mask_session_id(session_id))
            return None
        return entries_from_fragments(payload.get("entries"))

    def _merge_transcript(self, structured: Optional[list[TranscriptEntry]], details: dict) -> None:
        incoming = structured or entries_from_fragments(details.get("transcripts"))
        if not incoming:
            incoming = entries_from_concatenated(details.get("concatenated_transcript"))
        if not incoming:
            return

        merged, replaced = merge_monotonic(self._session.transcript, incoming)
        if replaced:
            self._session.transcript = merged
        else:
            logger.debug(
                "Stale transcript ignored (%d < %d entries)",
                len(incoming),
                len(self._session.transcript),
            )

    def _finish(self, status: CallStatus) -> None:
        self._session.status = status
        self._session.ended_at = utcnow()
        self._phase = TrackerPhase.TERMINAL

    # -------------------------------------------------------------------------
    # Detached side effects
    # -------------------------------------------------------------------------

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        return self._track(asyncio.create_task(coro))

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _notify_stop(self, session_id: str) -> None:
        self._spawn(self._send_stop(session_id))

    async def _send_stop(self, session_id: str) -> None:
        try:
            await self._backend.stop_session(session_id)
        except Exception as e:
            logger.warning("Background stop failed for call %s: %s", mask_session_id(session_id), str(e))
        else:
            logger.debug("Background stop delivered for call %s", mask_session_id(session_id))

    def _trigger_analysis(self, session_id: str) -> None:
        if self._analysis_requested_for == session_id:
            return
        self._analysis_requested_for = session_id
        self._spawn(self._run_analysis(session_id))

    async def _run_analysis(self, session_id: str) -> None:
        try:
            result = await self._backend.analyze_session(session_id, kind=self._analysis_kind)
            if not isinstance(result, AnalysisResult):
                result = AnalysisResult.model_validate(result)
        except Exception as e:
            logger.warning("Analysis failed for call %s: %s", mask_session_id(session_id), str(e))
            return

        if self._session is None or self._session.id != session_id:
            logger.debug("Analysis for call %s arrived after reset, dropped", mask_session_id(session_id))
            return
        self._session.analysis = result
        logger.info("Analysis attached to call %s", mask_session_id(session_id))
