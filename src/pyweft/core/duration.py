"""Duration parsing for ``sleep`` steps and scheduled callbacks."""

from __future__ import annotations

import re
from datetime import timedelta

_UNITS_MS = {
    "ms": 1,
    "s": 1000,
    "sec": 1000,
    "second": 1000,
    "seconds": 1000,
    "m": 60_000,
    "min": 60_000,
    "minute": 60_000,
    "minutes": 60_000,
    "h": 3_600_000,
    "hour": 3_600_000,
    "hours": 3_600_000,
    "d": 86_400_000,
    "day": 86_400_000,
    "days": 86_400_000,
}

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]+)?\s*$")

Duration = int | float | str | timedelta


def duration_to_ms(duration: Duration) -> int:
    """Convert a duration into milliseconds.

    Accepts a number of milliseconds, a ``timedelta``, or a string such as
    ``"500ms"``, ``"5s"``, ``"2min"`` or ``"1h"``. A bare numeric string is
    read as milliseconds.

    Raises:
        ValueError: If the duration is negative or cannot be parsed
    """
    if isinstance(duration, timedelta):
        ms = duration.total_seconds() * 1000
    elif isinstance(duration, (int, float)):
        ms = duration
    else:
        match = _DURATION_RE.match(duration)
        if match is None:
            raise ValueError(f"Invalid duration: {duration!r}")
        value, unit = match.groups()
        if unit is not None and unit.lower() not in _UNITS_MS:
            raise ValueError(f"Unknown duration unit {unit!r} in {duration!r}")
        ms = float(value) * (_UNITS_MS[unit.lower()] if unit else 1)

    if ms < 0:
        raise ValueError(f"Duration must not be negative: {duration!r}")
    return int(ms)
