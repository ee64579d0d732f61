"""Shared utility functions used across ESG Advisor modules."""
from __future__ import annotations

import json
import math
from datetime import UTC, datetime
from typing import Any


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values (``round()`` is banker's rounding)."""
    return int(math.floor(value + 0.5))


def coerce_number(value: Any, fallback: float = 0) -> float:
    """Return *value* as a finite float, or *fallback*."""
    if isinstance(value, bool):
        return float(value)
    try:
        num = float(value)
    except (TypeError, ValueError):
        return fallback
    return num if math.isfinite(num) else fallback


def ensure_string(value: Any, fallback: str = "") -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return fallback
    return str(value)


def stringify(value: Any) -> str:
    """Serialize evidence-like values to text: strings pass, everything else is JSON."""
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return ""


def utcnow() -> datetime:
    return datetime.now(UTC)


def isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
