"""
Helper utilities
"""
from datetime import datetime, timezone
from typing import Any, Optional, Union
import hashlib
import json
import re

from dateutil import parser as date_parser

from commerce_sync.errors import ConfigurationError

_SIZE_UNITS = {
    "": 1,
    "B": 1,
    "KB": 1024,
    "MB": 1024 ** 2,
    "GB": 1024 ** 3,
    "TB": 1024 ** 4,
}
_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT]?B?)\s*$", re.IGNORECASE)


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def hash_data(data: Any) -> str:
    """Create hash of data for change detection"""
    data_str = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(data_str.encode()).hexdigest()


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """Safely divide two numbers"""
    try:
        return numerator / denominator if denominator != 0 else default
    except (TypeError, ZeroDivisionError):
        return default


def parse_size(value: Union[int, float, str, None]) -> Optional[int]:
    """
    Parse a memory size into bytes

    Args:
        value: Byte count, or a string such as "1GB", "800MB", "512 KB"

    Returns:
        Size in bytes, or None when no limit is given
    """
    if value is None or value == "":
        return None

    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid memory limit: {value!r}")

    if isinstance(value, (int, float)):
        if value <= 0:
            raise ConfigurationError(f"Memory limit must be positive: {value!r}")
        return int(value)

    match = _SIZE_PATTERN.match(str(value))
    if not match:
        raise ConfigurationError(f"Invalid memory limit: {value!r}")

    number, unit = match.groups()
    unit = unit.upper()
    if unit and not unit.endswith("B"):
        unit += "B"

    size = int(float(number) * _SIZE_UNITS[unit])
    if size <= 0:
        raise ConfigurationError(f"Memory limit must be positive: {value!r}")
    return size


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Normalize various date formats to an aware UTC datetime

    Args:
        value: datetime, ISO-8601 string, or unix timestamp

    Returns:
        Aware datetime or None when the value cannot be parsed
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        dt = datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str):
        try:
            dt = date_parser.isoparse(value)
        except (ValueError, OverflowError):
            try:
                dt = date_parser.parse(value)
            except (ValueError, OverflowError):
                return None
    else:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
