"""Human-readable duration strings: ``"30s"``, ``"15min"``, ``"24h"``, ``"7days"``.

Every duration in the configuration goes through ``parse_duration``.  Bare
numbers are rejected so that ``7`` can never silently mean seven seconds
when the author meant seven days.
"""

from __future__ import annotations

import re
from datetime import timedelta

from lastsignal.errors import InvalidDurationFormat

_SECONDS_PER_UNIT: dict[str, int] = {}
for _alias in ("s", "sec", "secs", "second", "seconds"):
    _SECONDS_PER_UNIT[_alias] = 1
for _alias in ("m", "min", "mins", "minute", "minutes"):
    _SECONDS_PER_UNIT[_alias] = 60
for _alias in ("h", "hr", "hrs", "hour", "hours"):
    _SECONDS_PER_UNIT[_alias] = 60 * 60
for _alias in ("d", "day", "days"):
    _SECONDS_PER_UNIT[_alias] = 24 * 60 * 60

# Largest value a timedelta can represent, in whole seconds.
MAX_SECONDS = int(timedelta.max.total_seconds())

_DURATION_RE = re.compile(r"^(?P<number>\d*)\s*(?P<unit>.*)$", re.DOTALL)


def parse_duration(text: str) -> int:
    """Parse *text* into a number of seconds.

    >>> parse_duration("7d")
    604800
    >>> parse_duration("90 min")
    5400
    """
    if not isinstance(text, str):
        raise InvalidDurationFormat(
            f"Duration must be a string such as '7d' or '24h', got {text!r}"
        )

    raw = text.strip()
    if not raw:
        raise InvalidDurationFormat("Duration cannot be empty")

    match = _DURATION_RE.match(raw)
    number, unit = match.group("number"), match.group("unit").strip().lower()
    if not number:
        raise InvalidDurationFormat(f"Duration must start with a number: {text!r}")
    if not unit:
        raise InvalidDurationFormat(f"Duration must include a unit (s, m, h, d): {text!r}")

    multiplier = _SECONDS_PER_UNIT.get(unit)
    if multiplier is None:
        raise InvalidDurationFormat(
            f"Invalid duration unit {unit!r} in {text!r}. Valid units: s, m, h, d (or their full names)"
        )

    number = number.lstrip("0") or "0"
    if len(number) > len(str(MAX_SECONDS)):
        raise InvalidDurationFormat(f"Duration is too large: {text[:32]!r}...")
    value = int(number)
    if value == 0:
        raise InvalidDurationFormat(f"Duration must be greater than 0: {text!r}")

    seconds = value * multiplier
    if seconds > MAX_SECONDS:
        raise InvalidDurationFormat(f"Duration is too large: {text!r}")
    return seconds


def parse_timedelta(text: str) -> timedelta:
    return timedelta(seconds=parse_duration(text))


def format_duration(value: int | float | timedelta) -> str:
    """Render with the largest unit that divides evenly (``86400`` -> ``"1d"``)."""
    seconds = int(value.total_seconds() if isinstance(value, timedelta) else value)
    for suffix, size in (("d", 86400), ("h", 3600), ("m", 60)):
        if seconds and seconds % size == 0:
            return f"{seconds // size}{suffix}"
    return f"{seconds}s"


def humanize(value: int | float | timedelta) -> str:
    """``1_740_300`` -> ``"20 days, 3 hours, 25 minutes"``. Seconds only below one minute."""
    seconds = max(int(value.total_seconds() if isinstance(value, timedelta) else value), 0)
    if seconds < 60:
        return f"{seconds} second{'s' if seconds != 1 else ''}"
    parts = []
    for label, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        count, seconds = divmod(seconds, size)
        if count:
            parts.append(f"{count} {label}{'s' if count != 1 else ''}")
    return ", ".join(parts)
