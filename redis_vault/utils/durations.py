"""
Parsing of human-readable duration strings.

Accepts strings such as "300s", "30m", "1h30m", "1h 30m", "7d" or "2w".
A bare "0" is allowed as shorthand for a zero duration.
"""

import re
from datetime import timedelta


class DurationError(ValueError):
    """Raised when a duration string cannot be parsed."""
    pass


_UNIT_SECONDS = {
    'ms': 0.001,
    'msec': 0.001,
    'millis': 0.001,
    's': 1,
    'sec': 1,
    'secs': 1,
    'second': 1,
    'seconds': 1,
    'm': 60,
    'min': 60,
    'mins': 60,
    'minute': 60,
    'minutes': 60,
    'h': 3600,
    'hr': 3600,
    'hrs': 3600,
    'hour': 3600,
    'hours': 3600,
    'd': 86400,
    'day': 86400,
    'days': 86400,
    'w': 604800,
    'week': 604800,
    'weeks': 604800,
}

_PART_RE = re.compile(r'(\d+)\s*([a-zA-Z]+)')


def parse_duration(value: str) -> timedelta:
    """
    Parse a duration string into a timedelta.

    Args:
        value: Duration string, e.g. "1h30m"

    Returns:
        Parsed duration

    Raises:
        DurationError: If the string is empty, has an unknown unit or
            contains anything other than number/unit pairs
    """
    if value is None:
        raise DurationError("Duration must not be empty")

    text = str(value).strip()
    if not text:
        raise DurationError("Duration must not be empty")

    if text == '0':
        return timedelta(0)

    total = 0.0
    position = 0

    for match in _PART_RE.finditer(text):
        # Only whitespace may separate number/unit pairs
        if text[position:match.start()].strip():
            raise DurationError(f"Invalid duration: {value!r}")

        amount, unit = match.groups()
        factor = _UNIT_SECONDS.get(unit.lower())
        if factor is None:
            raise DurationError(f"Unknown time unit {unit!r} in duration {value!r}")

        total += int(amount) * factor
        position = match.end()

    if position == 0 or text[position:].strip():
        raise DurationError(f"Invalid duration: {value!r}")

    return timedelta(seconds=total)


def format_duration(delta: timedelta) -> str:
    """Format a timedelta compactly, e.g. 5400s -> '1h30m'."""
    seconds = int(delta.total_seconds())
    if seconds == 0:
        return '0s'

    parts = []
    for suffix, size in (('d', 86400), ('h', 3600), ('m', 60), ('s', 1)):
        count, seconds = divmod(seconds, size)
        if count:
            parts.append(f"{count}{suffix}")

    return ''.join(parts)
