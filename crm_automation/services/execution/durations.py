"""Duration strings used by delay and wait_input nodes ("30s", "5m", "2h", "1d", "1w")."""

import re
from datetime import timedelta
from typing import Any

DURATION_PATTERN = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*([smhdw]?)\s*$', re.IGNORECASE)

UNIT_SECONDS = {
    's': 1,
    'm': 60,
    'h': 3600,
    'd': 86400,
    'w': 604800,
}


def parse_duration(value: Any, default_unit: str = 'm') -> timedelta:
    """Parse a duration; bare numbers are minutes.

    Raises:
        ValueError: the value is empty, negative or not a duration.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        amount, unit = float(value), default_unit
    else:
        match = DURATION_PATTERN.match(str(value or ''))
        if not match:
            raise ValueError(f"Invalid duration: {value!r}")
        amount = float(match.group(1))
        unit = (match.group(2) or default_unit).lower()

    if amount < 0:
        raise ValueError(f"Invalid duration: {value!r}")
    return timedelta(seconds=amount * UNIT_SECONDS[unit])
