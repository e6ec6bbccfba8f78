#!/usr/bin/env python3
from __future__ import annotations

import datetime as dt
import re
from typing import Optional

from flowmode.core.errors import InvalidDuration

# Units in descending order; the index doubles as the ordering rank.
UNITS = ("h", "m", "s")
UNIT_SECONDS = {"h": 3600, "m": 60, "s": 1}

TOKEN_PATTERN = re.compile(r"(\d+)([A-Za-z]*)")
HINT = "Use format like '25m', '1h', '90m' or '1h30m'"


def parse_duration(text: Optional[str], allow_zero: bool = False) -> dt.timedelta:
    """Parse strings such as '1h30m', '25m' or '1h 30m 10s'.

    Units must appear in descending order (h, m, s), each at most once.
    Whitespace is allowed between tokens only. A zero total is rejected
    unless allow_zero is set (used for disabled breaks).
    """
    if text is None or not str(text).strip():
        raise InvalidDuration(f"Invalid duration '{text or ''}': empty value. {HINT}")

    s = str(text)
    pos = 0
    last_rank = -1
    total = 0
    while pos < len(s):
        if s[pos].isspace():
            pos += 1
            continue
        match = TOKEN_PATTERN.match(s, pos)
        if not match:
            raise InvalidDuration(f"Invalid duration '{s}': unexpected '{s[pos]}'. {HINT}")
        value, unit = match.group(1), match.group(2).lower()
        if not unit:
            raise InvalidDuration(f"Invalid duration '{s}': number {value} has no unit. {HINT}")
        if unit not in UNIT_SECONDS:
            raise InvalidDuration(f"Invalid duration '{s}': unknown unit '{unit}'. {HINT}")
        rank = UNITS.index(unit)
        if rank == last_rank:
            raise InvalidDuration(f"Invalid duration '{s}': unit '{unit}' given twice. {HINT}")
        if rank < last_rank:
            raise InvalidDuration(f"Invalid duration '{s}': units out of order. {HINT}")
        last_rank = rank
        total += int(value) * UNIT_SECONDS[unit]
        pos = match.end()

    if total == 0 and not allow_zero:
        raise InvalidDuration(f"Invalid duration '{s}': must be greater than zero. {HINT}")
    return dt.timedelta(seconds=total)


def format_duration(value: dt.timedelta) -> str:
    seconds = max(0, int(value.total_seconds()))
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs:
        parts.append(f"{secs}s")
    return "".join(parts) or "0s"


def humanize_seconds(total_seconds: float) -> str:
    seconds = max(0, int(total_seconds))
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
