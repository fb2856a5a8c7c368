"""Parse human-friendly durations such as ``90``, ``5m`` or ``1h 30m``."""

import math
import re
from typing import Union

_UNIT_SECONDS = {
    "ms": 0.001,
    "s": 1,
    "sec": 1,
    "second": 1,
    "seconds": 1,
    "m": 60,
    "min": 60,
    "minute": 60,
    "minutes": 60,
    "h": 3600,
    "hr": 3600,
    "hour": 3600,
    "hours": 3600,
}

_PART = re.compile(r"(\d+(?:\.\d+)?)\s*([a-z]*)")


def parse_duration(value: Union[int, float, str]) -> float:
    """Convert a duration to seconds.

    Bare numbers are seconds. Strings may combine several ``<number><unit>``
    parts, e.g. ``"1h 30m"`` or ``"2m30s"``.

    Raises:
        TypeError: If the value is not a number or a string.
        ValueError: If the value cannot be parsed or is not a positive finite number.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")

    if isinstance(value, (int, float)):
        seconds = float(value)
    elif not isinstance(value, str):
        raise TypeError(f"duration must be a number or a string, got {type(value).__name__}")
    else:
        text = value.strip().lower()
        if not text:
            raise ValueError("empty duration")

        seconds = 0.0
        pos = 0
        while pos < len(text):
            if text[pos].isspace():
                pos += 1
                continue
            match = _PART.match(text, pos)
            if not match:
                raise ValueError(f"invalid duration: {value!r}")
            amount, unit = match.groups()
            if unit and unit not in _UNIT_SECONDS:
                raise ValueError(f"unknown duration unit '{unit}' in {value!r}")
            seconds += float(amount) * _UNIT_SECONDS.get(unit or "s", 1)
            pos = match.end()

    if not math.isfinite(seconds):
        raise ValueError(f"duration must be finite: {value!r}")
    if seconds <= 0:
        raise ValueError(f"duration must be positive: {value!r}")
    return seconds


def format_duration(seconds: float) -> str:
    """Render seconds compactly for reports (``850ms``, ``12.3s``, ``2m05s``)."""
    if seconds < 1:
        return f"{int(round(seconds * 1000))}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(round(seconds)), 60)
    if minutes < 60:
        return f"{minutes}m{secs:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h{minutes:02d}m"
