"""Conversion between ``HH:MM:SS`` duration text and whole seconds."""

from __future__ import annotations

import re
from typing import Union

_STORED_DURATION_PATTERN = re.compile(r"^(\d+):([0-5]\d):([0-5]\d)$")


class DurationError(ValueError):
    """Base class for malformed duration text."""


class InvalidFormat(DurationError):
    """Raised when the text is not three colon-separated integer groups."""


class InvalidRange(DurationError):
    """Raised when a field is negative or minutes/seconds exceed 59."""


def format_duration(seconds: Union[int, float]) -> str:
    """Render a non-negative second count as ``HH:MM:SS``."""
    total_seconds = int(round(seconds))
    if total_seconds < 0:
        raise InvalidRange(f"Duration cannot be negative: {seconds}")
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def parse_duration(text: str) -> int:
    """Parse ``HH:MM:SS`` (single digit groups allowed) into seconds."""
    if not text or not isinstance(text, str):
        raise InvalidFormat("Invalid time string format")

    parts = text.split(":")
    if len(parts) != 3:
        raise InvalidFormat("Time string must be in HH:MM:SS format")

    try:
        hours, minutes, secs = (int(part.strip()) for part in parts)
    except ValueError as exc:
        raise InvalidFormat("Invalid time values") from exc

    if hours < 0 or minutes < 0 or secs < 0 or minutes >= 60 or secs >= 60:
        raise InvalidRange("Invalid time range")

    return hours * 3600 + minutes * 60 + secs


def add_seconds(text: str, delta: Union[int, float]) -> str:
    """Add ``delta`` seconds to a duration; negative deltas count as zero."""
    return format_duration(parse_duration(text) + max(0, int(round(delta))))


def is_valid_duration(text: object) -> bool:
    """Check the strict stored form: two digit minutes and seconds."""
    if not isinstance(text, str):
        return False
    return _STORED_DURATION_PATTERN.match(text) is not None
