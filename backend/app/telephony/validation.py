"""
CallSync - Call Request Validation

Local, synchronous checks applied before anything reaches the upstream
call service. Every rejection raises ValidationError with a message that is
safe to show to the user.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional

from app.core.exceptions import ValidationError

# Permissive international format: optional +, digits, spaces, dashes, parens
PHONE_NUMBER_PATTERN = re.compile(r"^\+?[\d\s\-\(\)]{10,}$")

_SCRIPT_BLOCK = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_MARKUP_TAG = re.compile(r"<[^>]*>")


@dataclass(frozen=True)
class ValidationLimits:
    """Bounds for free-text and numeric call options."""
    task_min_length: int = 10
    task_max_length: int = 5000
    max_duration_min: float = 1
    max_duration_max: float = 30
    temperature_min: float = 0.0
    temperature_max: float = 2.0

    @classmethod
    def from_settings(cls, settings) -> "ValidationLimits":
        return cls(
            task_min_length=settings.task_min_length,
            task_max_length=settings.task_max_length,
            max_duration_min=settings.max_duration_min_minutes,
            max_duration_max=settings.max_duration_max_minutes,
            temperature_min=settings.temperature_min,
            temperature_max=settings.temperature_max,
        )


def validate_destination(number: Any) -> str:
    """Validate a destination phone number and return it trimmed."""
    if number is None or not str(number).strip():
        raise ValidationError("Phone number is required")

    trimmed = str(number).strip()
    if not PHONE_NUMBER_PATTERN.match(trimmed):
        raise ValidationError(
            "Invalid phone number format. Please use international format (e.g., +1-555-123-4567)"
        )
    return trimmed


def sanitize_task(task: str) -> str:
    """Strip script blocks and markup tags from free text."""
    without_scripts = _SCRIPT_BLOCK.sub("", task)
    return _MARKUP_TAG.sub("", without_scripts).strip()


def validate_task(task: Any, limits: ValidationLimits = ValidationLimits()) -> str:
    """Validate task length bounds and return the sanitized task."""
    if task is None or not str(task).strip():
        raise ValidationError("Task is required")

    trimmed = str(task).strip()
    if len(trimmed) < limits.task_min_length:
        raise ValidationError(
            f"Task description must be at least {limits.task_min_length} characters long"
        )
    if len(trimmed) > limits.task_max_length:
        raise ValidationError(
            f"Task description must be less than {limits.task_max_length} characters"
        )

    sanitized = sanitize_task(trimmed)
    if not sanitized:
        raise ValidationError("Task is required")
    return sanitized


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:  # NaN
        return None
    return number


def validate_options(options: dict, limits: ValidationLimits = ValidationLimits()) -> dict:
    """Check numeric option bounds. Returns a copy with numbers coerced."""
    checked = dict(options)

    if checked.get("max_duration") is not None:
        duration = _as_number(checked["max_duration"])
        if duration is None or not limits.max_duration_min <= duration <= limits.max_duration_max:
            raise ValidationError(
                f"Max duration must be between {limits.max_duration_min:g} "
                f"and {limits.max_duration_max:g} minutes"
            )
        checked["max_duration"] = int(duration) if duration.is_integer() else duration

    if checked.get("temperature") is not None:
        temperature = _as_number(checked["temperature"])
        if temperature is None or not limits.temperature_min <= temperature <= limits.temperature_max:
            raise ValidationError(
                f"Temperature must be between {limits.temperature_min:g} and {limits.temperature_max:g}"
            )
        checked["temperature"] = temperature

    return checked
