"""
Size and time-interval helpers for cache policy values.

Policy values arrive as human strings from the environment or YAML
("10GB", "30d", "24h"); these helpers turn them into bytes / seconds and
back into a readable form for health reports.
"""

from __future__ import annotations

import re
from typing import Union

SIZE_UNITS = {
    "B": 1,
    "KB": 1024,
    "MB": 1024 ** 2,
    "GB": 1024 ** 3,
    "TB": 1024 ** 4,
}

INTERVAL_UNITS = {
    "s": 1,
    "m": 60,
    "h": 60 * 60,
    "d": 24 * 60 * 60,
    "w": 7 * 24 * 60 * 60,
}

_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT]?B)\s*$", re.IGNORECASE)
_INTERVAL_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhdw])\s*$", re.IGNORECASE)


def parse_size(value: Union[str, int, float]) -> int:
    """
    Parse a size such as "10GB", "512 MB" or a plain byte count into bytes.

    Raises:
        ValueError: If the value is neither a number nor a recognised size.
    """
    if isinstance(value, (int, float)):
        return int(value)

    match = _SIZE_PATTERN.match(value)
    if match:
        number = float(match.group(1))
        unit = match.group(2).upper()
        return int(number * SIZE_UNITS[unit])

    try:
        return int(float(value))
    except ValueError:
        raise ValueError(f"Invalid size: {value!r}")


def parse_interval(value: Union[str, int, float]) -> float:
    """
    Parse an interval such as "2w", "30d", "24h", "15m" or plain seconds.

    Raises:
        ValueError: If the value is neither a number nor a recognised interval.
    """
    if isinstance(value, (int, float)):
        return float(value)

    match = _INTERVAL_PATTERN.match(value)
    if match:
        number = float(match.group(1))
        unit = match.group(2).lower()
        return number * INTERVAL_UNITS[unit]

    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Invalid interval: {value!r}")


def format_size(size_bytes: Union[int, float]) -> str:
    """Format a byte count as e.g. "1.50 GB"."""
    units = list(SIZE_UNITS)
    size = float(size_bytes)
    unit_index = 0

    while size >= 1024 and unit_index < len(units) - 1:
        size /= 1024
        unit_index += 1

    return f"{size:.2f} {units[unit_index]}"
