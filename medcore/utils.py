"""Shared helpers for phone, time and PII handling."""

from __future__ import annotations

import re
from datetime import time

_SLOT_TIME_RE = re.compile(
    r"^(?:slot_)?(\d{1,2})(?::?(\d{2}))?\s*([ap])\.?\s*m?\.?$",
    re.IGNORECASE,
)
_BARE_TIME_RE = re.compile(r"^(?:slot_)?(\d{1,2})(?::?(\d{2}))?$")


def normalize_phone(value: str) -> str:
    """Strip everything except digits and a leading +.

    >>> normalize_phone("+1 (555) 010-1")
    '+15550101'
    """
    value = value.strip()
    if value.startswith("+"):
        return "+" + re.sub(r"[^\d]", "", value[1:])
    return re.sub(r"[^\d]", "", value)


def normalize_slot_time(value: str) -> str | None:
    """Normalise a slot label to the catalog's ``"10:00 AM"`` form.

    Accepts ``"10:00 AM"``, ``"10am"``, ``"14:00"`` and slot ids such as
    ``"slot_1400"``.  Returns ``None`` for anything that is not a clock time.
    """
    text = value.strip()
    match = _SLOT_TIME_RE.match(text)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2) or 0)
        if not 1 <= hour <= 12:
            return None
        hour = hour % 12 + (12 if match.group(3).lower() == "p" else 0)
    else:
        match = _BARE_TIME_RE.match(text)
        if not match:
            return None
        hour, minute = int(match.group(1)), int(match.group(2) or 0)

    if hour > 23 or minute > 59:
        return None
    return time(hour, minute).strftime("%I:%M %p")


def redact_pii(value: str | None) -> str:
    """Mask PII for logging: first 3 and last 2 characters only."""
    if not value or len(value) <= 5:
        return "***"
    return value[:3] + "***" + value[-2:]
