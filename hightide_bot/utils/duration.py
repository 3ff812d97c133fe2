from __future__ import annotations

import re
from typing import Optional

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd])\s*$", re.IGNORECASE)

UNIT_MS = {
    "s": 1_000,
    "m": 60_000,
    "h": 3_600_000,
    "d": 86_400_000,
}

UNIT_NAMES = {
    "s": "second",
    "m": "minute",
    "h": "hour",
    "d": "day",
}


def _match(text: str) -> Optional[tuple[int, str]]:
    match = _DURATION_RE.match(text or "")
    if not match:
        return None
    return int(match.group(1)), match.group(2).lower()


def parse_duration(text: str) -> Optional[int]:
    """Convert ``10s``/``10m``/``2h``/``4d`` into milliseconds, ``None`` if malformed."""
    parsed = _match(text)
    if parsed is None:
        return None
    value, unit = parsed
    return value * UNIT_MS[unit]


def pretty_duration(text: str) -> str:
    """Render a duration string as words (``2h`` -> ``2 hours``), or return it unchanged."""
    parsed = _match(text)
    if parsed is None:
        return text
    value, unit = parsed
    name = UNIT_NAMES[unit]
    return f"{value} {name}{'' if value == 1 else 's'}"


def humanize_ms(milliseconds: int) -> str:
    parts = []
    remaining = max(0, milliseconds) // 1000
    for unit_seconds, suffix in ((86400, "d"), (3600, "h"), (60, "m"), (1, "s")):
        if remaining >= unit_seconds:
            value = remaining // unit_seconds
            remaining %= unit_seconds
            parts.append(f"{value}{suffix}")
    return " ".join(parts) if parts else "0s"
