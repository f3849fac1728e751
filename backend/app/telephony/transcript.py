"""
CallSync - Transcript Normalization

Turns the three shapes a transcript can arrive in into an ordered list of
TranscriptEntry:

- structured fragments ({"user", "text", "created_at"})
- already-normalized entries ({"user", "text", "timestamp"})
- a single newline-delimited "speaker: text" string

Ordering follows arrival order, not timestamps.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence

from .models import TranscriptEntry, isoformat_z, utcnow


def entries_from_fragments(fragments: Optional[Sequence[Any]]) -> list[TranscriptEntry]:
    """
    Normalize structured transcript fragments.

    Fragments without string ``user``/``text`` or with blank text are dropped.
    Accepts a list of dicts or pydantic models; anything else yields nothing.
    """
    if not fragments or not isinstance(fragments, (list, tuple)):
        return []

    entries = []
    fallback_ts = None
    for fragment in fragments:
        if hasattr(fragment, "model_dump"):
            fragment = fragment.model_dump()
        if not isinstance(fragment, dict):
            continue

        text = fragment.get("text")
        user = fragment.get("user", fragment.get("speaker"))
        if not isinstance(text, str) or not isinstance(user, str):
            continue
        if not text.strip():
            continue

        timestamp = fragment.get("timestamp") or fragment.get("created_at")
        if not timestamp:
            if fallback_ts is None:
                fallback_ts = isoformat_z(utcnow())
            timestamp = fallback_ts

        entries.append(TranscriptEntry(speaker=user or "unknown", text=text, timestamp=str(timestamp)))
    return entries


def entries_from_concatenated(text: Optional[str]) -> list[TranscriptEntry]:
    """
    Parse a concatenated transcript, one "speaker: text" per line.

    Lines without a separator keep the whole line as text and an
    ``unknown`` speaker.
    """
    if not isinstance(text, str) or not text.strip():
        return []

    timestamp = isoformat_z(utcnow())
    entries = []
    for line in text.split("\n"):
        if not line.strip():
            continue
        speaker, sep, rest = line.partition(": ")
        if sep and rest:
            entries.append(TranscriptEntry(speaker=speaker or "unknown", text=rest, timestamp=timestamp))
        else:
            entries.append(TranscriptEntry(speaker="unknown", text=line, timestamp=timestamp))
    return entries


def transcript_to_text(entries: Sequence[TranscriptEntry]) -> str:
    """Render entries back into "speaker: text" lines."""
    return "\n".join(f"{entry.speaker}: {entry.text}" for entry in entries)


def merge_monotonic(
    current: Sequence[TranscriptEntry],
    incoming: Sequence[TranscriptEntry],
) -> tuple[list[TranscriptEntry], bool]:
    """
    Monotonic-length merge.

    The incoming sequence replaces the current one only when it is at least
    as long, so a stale response can never shorten the transcript.

    Returns:
        (resulting transcript, whether it was replaced)
    """
    if len(incoming) >= len(current):
        return list(incoming), True
    return list(current), False
