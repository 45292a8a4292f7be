"""
Timestamp and numeric coercion utilities for values read back from the graph and vector stores.

The backends hand back loosely typed values: vectors may arrive as lists of ints, longs or
doubles (or as a JSON string when a backend cannot hold list properties), and timestamps may
arrive as datetimes, epoch numbers or strings. Each helper converts one kind of value and logs
whenever it has to fall back to a default.
"""

import json
import time
from datetime import datetime, timezone
from typing import Any, List, Optional

from .logging_config import get_logger

logger = get_logger(__name__)


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_epoch_seconds(timestamp: Optional[datetime] = None) -> int:
    """Convert a datetime to integer epoch seconds.

    Args:
        timestamp: datetime to convert (optional, uses current time if None)

    Returns:
        Epoch seconds
    """
    if timestamp is None:
        return int(time.time())
    return int(timestamp.timestamp())


def to_iso_str(timestamp: Optional[datetime] = None) -> str:
    """Serialize a datetime as an ISO-8601 UTC string (current time if None)."""
    timestamp = timestamp or utc_now()
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


def to_datetime(value: Any, field_name: str = 'timestamp') -> datetime:
    """Parse a stored timestamp permissively.

    Accepts datetimes, epoch seconds or milliseconds (int, float or numeric string) and ISO-8601
    strings. Falls back to the current time only when nothing else parses, and logs a warning
    when it does.

    Args:
        value: Raw value from the backend
        field_name: Name used in the fallback warning

    Returns:
        Timezone-aware datetime
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    if isinstance(value, bool):
        value = None
    elif isinstance(value, (int, float)):
        return _from_epoch(value)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            return _from_epoch(float(text))
        except ValueError:
            pass
        try:
            parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        except ValueError:
            pass

    logger.warning(f'Could not parse {field_name} value {value!r}; defaulting to current time')
    return utc_now()


def _from_epoch(value: float) -> datetime:
    # Values past year 33658 in seconds are treated as milliseconds
    if abs(value) > 1e12:
        value = value / 1000.0
    return datetime.fromtimestamp(value, tz=timezone.utc)


def to_float_list(value: Any, field_name: str = 'embedding') -> List[float]:
    """Coerce a stored vector to a list of floats.

    Every element is converted on its own; an element that cannot be converted becomes 0.0
    instead of failing the whole read.

    Args:
        value: Raw vector (list, tuple, JSON string or None)
        field_name: Name used in the fallback warning

    Returns:
        List of floats, empty when the value is missing
    """
    if value is None:
        return []

    if isinstance(value, str):
        if not value.strip():
            return []
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            logger.warning(f'Could not decode {field_name} string; treating as empty vector')
            return []

    if not isinstance(value, (list, tuple)):
        logger.warning(f'Unexpected {field_name} type {type(value).__name__}; treating as empty vector')
        return []

    result = []
    fallbacks = 0
    for item in value:
        try:
            result.append(float(item))
        except (TypeError, ValueError):
            result.append(0.0)
            fallbacks += 1

    if fallbacks:
        logger.warning(f'Defaulted {fallbacks} unconvertible element(s) of {field_name} to 0.0')

    return result


def to_int(value: Any, default: int = 0) -> int:
    """Coerce a stored integer (int, float or numeric string)."""
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        logger.warning(f'Could not convert {value!r} to int; defaulting to {default}')
        return default
