"""
Defensive parsing of values read back from Redis.

Telemetry may be stale or partially written; malformed fields become zero or
None and are logged instead of raised.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)


def as_float(value: Any, default: float = 0.0, field: str = "") -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning("Malformed numeric field %s=%r, using %s", field or "?", value, default)
        return default


def as_int(value: Any, default: int = 0, field: str = "") -> int:
    if value is None or value == "":
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        logger.warning("Malformed integer field %s=%r, using %s", field or "?", value, default)
        return default


def as_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def as_datetime(value: Any, field: str = "") -> Optional[datetime]:
    """Unix timestamp (seconds) to an aware UTC datetime."""
    if value is None or value == "":
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        logger.warning("Malformed timestamp field %s=%r", field or "?", value)
        return None


def truncate_text(value: str, max_length: int) -> str:
    if len(value) <= max_length:
        return value
    return value[:max_length]


def split_tagged(member: str) -> float:
    """Value part of a ``<job id>:<value>`` sample member."""
    _, _, raw = member.rpartition(":")
    return as_float(raw, field="sample")
