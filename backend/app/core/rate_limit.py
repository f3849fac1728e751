"""
CallSync - Admission Control

Sliding-window rate limiter keyed by caller identity and operation path.

Algorithm:
    Each key owns an ordered log of admitted request instants. A check drops
    every instant at or before ``now - window``; the request is admitted and
    recorded when fewer than ``limit`` instants survive, otherwise it is
    denied and ``retry_after`` is derived from the oldest surviving instant.

Memory:
    The store is swept at most once per ``sweep_interval``. A sweep drops keys
    whose newest instant is older than ``idle_ttl``. When the key count
    exceeds ``max_entries`` the sweep is forced, and if the store is still
    over the cap afterwards it is cleared outright.

Failure policy:
    The limiter is advisory and single-instance. Any internal error admits
    the request (fail open).

The store lives in process memory only and is reset on restart.
"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)


Clock = Callable[[], float]
"""Returns the current time in seconds (``time.time`` compatible)."""


# =============================================================================
# Profiles
# =============================================================================

@dataclass(frozen=True)
class RateLimitProfile:
    """A named (limit, window) pair for one operation class."""
    name: str
    limit: int
    window_ms: int


RATE_LIMIT_PROFILES: Dict[str, RateLimitProfile] = {
    # Default for API endpoints
    "default": RateLimitProfile("default", limit=100, window_ms=60_000),
    # 2.5s polling = 24/minute, plus headroom for the transcript sub-resource
    "polling": RateLimitProfile("polling", limit=50, window_ms=60_000),
    # General read operations
    "permissive": RateLimitProfile("permissive", limit=200, window_ms=60_000),
    # Write operations (stop)
    "standard": RateLimitProfile("standard", limit=30, window_ms=60_000),
    # LLM-backed analysis
    "strict": RateLimitProfile("strict", limit=10, window_ms=60_000),
    # Call placement
    "critical": RateLimitProfile("critical", limit=5, window_ms=300_000),
}


def get_profile(name: str) -> RateLimitProfile:
    """Look up a profile by name, falling back to ``default``."""
    return RATE_LIMIT_PROFILES.get(name, RATE_LIMIT_PROFILES["default"])


# =============================================================================
# Decision
# =============================================================================

def _iso_from_ms(ms: float) -> str:
    dt = datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


@dataclass(frozen=True)
class RateLimitDecision:
    """
    Outcome of one admission check.

    Attributes:
        allowed: Whether the request was admitted
        limit: Configured limit for the window
        remaining: Requests left in the current window
        reset_at_ms: Epoch milliseconds at which the oldest entry leaves the window
        retry_after_seconds: Seconds to wait before retrying (denials only)
    """
    allowed: bool
    limit: int
    remaining: int
    reset_at_ms: float
    retry_after_seconds: Optional[int] = None

    @property
    def reset_at(self) -> datetime:
        return datetime.fromtimestamp(self.reset_at_ms / 1000.0, tz=timezone.utc)

    @property
    def reset_iso(self) -> str:
        return _iso_from_ms(self.reset_at_ms)

    def headers(self) -> Dict[str, str]:
        """Rate limit response headers."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": self.reset_iso,
        }
        if self.retry_after_seconds:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers

    def to_dict(self) -> dict:
        return {
            "limit": self.limit,
            "remaining": self.remaining,
            "reset": self.reset_iso,
            "retryAfter": self.retry_after_seconds,
        }


# =============================================================================
# Store
# =============================================================================

class RateLimitStore:
    """
    In-memory map of key -> ordered request instants (epoch ms).

    Owned by exactly one AdmissionController. Not shared across processes.
    """

    def __init__(self):
        self._entries: Dict[str, Deque[float]] = {}
        self.last_sweep_ms: float = 0.0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> Optional[Deque[float]]:
        return self._entries.get(key)

    def get_or_create(self, key: str) -> Deque[float]:
        entry = self._entries.get(key)
        if entry is None:
            entry = deque()
            self._entries[key] = entry
        return entry

    def evict_idle(self, cutoff_ms: float) -> int:
        """Drop keys with no instant newer than ``cutoff_ms``. Returns count removed."""
        stale = [
            key for key, instants in self._entries.items()
            if not instants or instants[-1] <= cutoff_ms
        ]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()


# =============================================================================
# Controller
# =============================================================================

class AdmissionController:
    """
    Sliding-window log rate limiter.

    Usage:
        controller = AdmissionController()
        decision = controller.check("203.0.113.7:/api/calls", limit=5, window_ms=300_000)
        if not decision.allowed:
            raise AdmissionDeniedError(decision)
    """

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        clock: Clock = time.time,
        sweep_interval_seconds: float = 300,
        max_entries: int = 10000,
        idle_ttl_seconds: float = 3600,
    ):
        """
        Args:
            store: Backing store (a fresh one is created when omitted)
            clock: Time source in seconds
            sweep_interval_seconds: Minimum time between routine sweeps
            max_entries: Hard cap on tracked keys
            idle_ttl_seconds: Keys idle for longer than this are swept
        """
        self._store = store if store is not None else RateLimitStore()
        self._clock = clock
        self._sweep_interval_ms = sweep_interval_seconds * 1000.0
        self._max_entries = max_entries
        self._idle_ttl_ms = idle_ttl_seconds * 1000.0

    @property
    def store(self) -> RateLimitStore:
        return self._store

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def check(self, key: str, limit: int, window_ms: int) -> RateLimitDecision:
        """
        Check and record one request for ``key``.

        Never raises: internal failures admit the request.
        """
        try:
            self._sweep()
            return self._check(key, limit, window_ms)
        except Exception:
            logger.exception("Rate limiting failed for key, failing open")
            if len(self._store) > self._max_entries:
                logger.warning("Emergency rate limit cleanup due to error")
                self._store.clear()
                self._store.last_sweep_ms = self._safe_now_ms()
            return RateLimitDecision(
                allowed=True,
                limit=limit,
                remaining=max(0, limit - 1),
                reset_at_ms=self._safe_now_ms() + window_ms,
            )

    def check_profile(self, key: str, profile: RateLimitProfile) -> RateLimitDecision:
        return self.check(key, profile.limit, profile.window_ms)

    def _check(self, key: str, limit: int, window_ms: int) -> RateLimitDecision:
        now = self._now_ms()
        window_start = now - window_ms

        instants = self._store.get_or_create(key)
        while instants and instants[0] <= window_start:
            instants.popleft()

        allowed = len(instants) < limit
        if allowed:
            instants.append(now)

        remaining = max(0, limit - len(instants))
        oldest = instants[0] if instants else None
        reset_at = oldest + window_ms if oldest is not None else now + window_ms

        retry_after = None
        if not allowed and oldest is not None:
            retry_after = max(1, math.ceil((oldest + window_ms - now) / 1000.0))

        return RateLimitDecision(
            allowed=allowed,
            limit=limit,
            remaining=remaining,
            reset_at_ms=reset_at,
            retry_after_seconds=retry_after,
        )

    def _sweep(self) -> None:
        """Throttled eviction of idle keys, forced when over capacity."""
        now = self._now_ms()
        over_capacity = len(self._store) > self._max_entries

        if not over_capacity and now - self._store.last_sweep_ms < self._sweep_interval_ms:
            return

        self._store.last_sweep_ms = now
        removed = self._store.evict_idle(now - self._idle_ttl_ms)

        if removed:
            logger.debug(
                "Rate limit cleanup: removed %d expired entries (%d remaining)",
                removed,
                len(self._store),
            )

        if len(self._store) > self._max_entries:
            logger.warning(
                "Rate limit store over capacity after sweep (%d/%d), clearing",
                len(self._store),
                self._max_entries,
            )
            self._store.clear()
        elif len(self._store) > self._max_entries * 0.8:
            logger.warning(
                "Rate limit store approaching capacity: %d/%d entries",
                len(self._store),
                self._max_entries,
            )

    def _safe_now_ms(self) -> float:
        try:
            return self._now_ms()
        except Exception:
            return time.time() * 1000.0


# =============================================================================
# Caller Identity
# =============================================================================

def client_identity(
    peer_address: Optional[str],
    forwarded_for: Optional[str] = None,
    real_ip: Optional[str] = None,
) -> str:
    """
    Derive the caller identity used in admission keys.

    Prefers the direct peer address, then the first X-Forwarded-For hop,
    then X-Real-IP.
    """
    if peer_address:
        return peer_address
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop
    if real_ip:
        return real_ip.strip()
    return "anonymous"


def admission_key(identity: str, path: str) -> str:
    return f"{identity}:{path}"


def create_admission_controller(settings) -> AdmissionController:
    """Build an AdmissionController from application settings."""
    return AdmissionController(
        sweep_interval_seconds=settings.rate_limit_sweep_interval_seconds,
        max_entries=settings.rate_limit_max_entries,
        idle_ttl_seconds=settings.rate_limit_idle_ttl_seconds,
    )
