"""
CallSync - Validation and Transcript Tests

Run with: pytest tests/test_validation_transcript.py -v
"""

import math

import pytest

from app.core.exceptions import ValidationError
from app.telephony.models import CallStatus, TranscriptEntry
from app.telephony.transcript import (
    entries_from_concatenated,
    entries_from_fragments,
    merge_monotonic,
    transcript_to_text,
)
from app.telephony.validation import (
    ValidationLimits,
    sanitize_task,
    validate_destination,
    validate_options,
    validate_task,
)


def entry(speaker: str, text: str) -> TranscriptEntry:
    return TranscriptEntry(speaker=speaker, text=text, timestamp="2024-05-01T12:00:00.000Z")


class TestDestination:

    @pytest.mark.parametrize("number", ["+15551234567", "+1-555-123-4567", "(555) 123-4567", "5551234567"])
    def test_accepted_formats(self, number):
        assert validate_destination(f"  {number} ") == number

    @pytest.mark.parametrize("number", ["555-1234", "+1 555 CALL NOW", "phone: 5551234567"])
    def test_rejected_formats(self, number):
        with pytest.raises(ValidationError, match="Invalid phone number format"):
            validate_destination(number)

    @pytest.mark.parametrize("number", [None, "", "   "])
    def test_missing(self, number):
        with pytest.raises(ValidationError, match="Phone number is required"):
            validate_destination(number)


class TestTask:

    def test_sanitize_strips_scripts_and_tags(self):
        assert sanitize_task("<script type='x'>steal()</script><i>Order</i> pizza") == "Order pizza"

    def test_length_measured_before_sanitizing(self):
        """Markup counts toward the minimum length."""
        assert validate_task("<b>Order</b> now") == "Order now"

    def test_only_markup_is_rejected(self):
        with pytest.raises(ValidationError, match="Task is required"):
            validate_task("<script>alert('hello')</script>")

    def test_custom_limits(self):
        limits = ValidationLimits(task_min_length=3, task_max_length=5)
        assert validate_task("abcd", limits) == "abcd"
        with pytest.raises(ValidationError, match="less than 5 characters"):
            validate_task("abcdef", limits)


class TestOptions:

    def test_unknown_options_pass_through(self):
        options = {"voice": "maya", "record": True, "metadata": {"order": 7}}
        assert validate_options(options) == options

    def test_numeric_strings_coerced(self):
        checked = validate_options({"max_duration": "5", "temperature": "0.7"})
        assert checked == {"max_duration": 5, "temperature": 0.7}

    def test_fractional_duration_kept(self):
        assert validate_options({"max_duration": 2.5})["max_duration"] == 2.5

    def test_input_not_mutated(self):
        options = {"max_duration": "5"}
        validate_options(options)
        assert options == {"max_duration": "5"}

    @pytest.mark.parametrize("value", [0, 30.5, math.nan, True, "", [5]])
    def test_bad_duration(self, value):
        with pytest.raises(ValidationError, match="Max duration"):
            validate_options({"max_duration": value})

    @pytest.mark.parametrize("value", [-0.1, 2.01, math.nan, False])
    def test_bad_temperature(self, value):
        with pytest.raises(ValidationError, match="Temperature"):
            validate_options({"temperature": value})

    def test_bounds_inclusive(self):
        assert validate_options({"max_duration": 1, "temperature": 0})["temperature"] == 0.0
        assert validate_options({"max_duration": 30, "temperature": 2})["max_duration"] == 30

    def test_none_values_skip_checks(self):
        assert validate_options({"max_duration": None}) == {"max_duration": None}


class TestStatusParsing:

    @pytest.mark.parametrize("raw,expected", [
        ("completed", CallStatus.COMPLETED),
        ("IN_PROGRESS", CallStatus.IN_PROGRESS),
        ("in-progress", CallStatus.IN_PROGRESS),
        ("canceled", CallStatus.CANCELLED),
        (" No_Answer ", CallStatus.NO_ANSWER),
    ])
    def test_known(self, raw, expected):
        assert CallStatus.parse(raw) is expected

    @pytest.mark.parametrize("raw", ["", "dialing", None, 3])
    def test_unknown(self, raw):
        assert CallStatus.parse(raw) is None

    def test_terminal_sets(self):
        assert CallStatus.STOPPED.is_terminal
        assert CallStatus.UNKNOWN.is_terminal
        assert CallStatus.RINGING.is_active
        assert not CallStatus.COMPLETED.is_active


class TestTranscriptNormalization:

    def test_fragments_keep_arrival_order(self):
        entries = entries_from_fragments([
            {"user": "user", "text": "Second", "created_at": "2024-05-01T12:00:09.000Z"},
            {"user": "assistant", "text": "First", "created_at": "2024-05-01T12:00:01.000Z"},
        ])
        assert [e.text for e in entries] == ["Second", "First"]

    def test_fragments_skip_invalid(self):
        entries = entries_from_fragments([
            {"user": "assistant", "text": "Hello"},
            {"user": "user", "text": "   "},
            {"user": None, "text": "orphan"},
            {"text": 42, "user": "user"},
            "not a fragment",
        ])
        assert [e.text for e in entries] == ["Hello"]
        assert entries[0].timestamp.endswith("Z")

    @pytest.mark.parametrize("fragments", [5, "assistant: Hi", {"user": "assistant", "text": "Hi"}])
    def test_fragments_not_a_list(self, fragments):
        assert entries_from_fragments(fragments) == []

    def test_concatenated_not_a_string(self):
        assert entries_from_concatenated(["assistant: Hi"]) == []

    def test_normalized_entries_accepted(self):
        entries = entries_from_fragments([{"user": "assistant", "text": "Hi", "timestamp": "T1"}])
        assert entries[0].timestamp == "T1"

    def test_concatenated(self):
        entries = entries_from_concatenated("assistant: Hello there\n\nuser: Hi: how are you\nstatic noise")
        assert [(e.speaker, e.text) for e in entries] == [
            ("assistant", "Hello there"),
            ("user", "Hi: how are you"),
            ("unknown", "static noise"),
        ]
        assert len({e.timestamp for e in entries}) == 1

    @pytest.mark.parametrize("text", [None, "", "  \n "])
    def test_concatenated_empty(self, text):
        assert entries_from_concatenated(text) == []

    def test_to_text(self):
        assert transcript_to_text([entry("assistant", "Hi"), entry("user", "Hey")]) == "assistant: Hi\nuser: Hey"


class TestMonotonicMerge:
    """The transcript never shrinks."""

    def test_longer_replaces(self):
        merged, replaced = merge_monotonic([entry("a", "1")], [entry("a", "1"), entry("b", "2")])
        assert replaced
        assert len(merged) == 2

    def test_equal_length_replaces(self):
        merged, replaced = merge_monotonic([entry("a", "partial")], [entry("a", "partial words")])
        assert replaced
        assert merged[0].text == "partial words"

    def test_shorter_is_ignored(self):
        current = [entry("a", "1"), entry("b", "2")]
        merged, replaced = merge_monotonic(current, [entry("a", "1")])
        assert not replaced
        assert merged == current

    def test_length_never_decreases_over_sequence(self):
        lengths = [0, 2, 1, 3, 3, 0, 5, 4]
        current = []
        seen = []
        for n in lengths:
            current, _ = merge_monotonic(current, [entry("a", str(i)) for i in range(n)])
            seen.append(len(current))
        assert seen == [0, 2, 2, 3, 3, 3, 5, 5]
