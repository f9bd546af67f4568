"""
Utility helper functions for safe data handling and lap time formatting.
"""
from typing import Any, Optional


def safe_int(value: Any, default: int = 0) -> int:
    """
    Safely convert value to int, handling None and invalid values.

    Args:
        value: Any value to convert
        default: Default int if conversion fails

    Returns:
        Integer or default
    """
    if value is None:
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def safe_str(value: Any, default: str = "") -> str:
    """Safely convert value to string, handling None."""
    if value is None:
        return default
    return str(value)


def ten_thousandths_to_ms(value: Any) -> Optional[int]:
    """
    Convert an upstream time in 1/10000 s to milliseconds.

    Non-positive or missing values mean "no time" and return None.
    """
    raw = safe_int(value, -1)
    if raw <= 0:
        return None
    return int(round(raw / 10))


def format_lap_time(time_ms: Optional[int]) -> str:
    """
    Format milliseconds as M:SS.mmm.

    Returns "N/A" for a missing or negative time.
    """
    if time_ms is None or time_ms < 0:
        return "N/A"
    minutes, remainder = divmod(int(time_ms), 60_000)
    seconds, millis = divmod(remainder, 1000)
    return f"{minutes}:{seconds:02d}.{millis:03d}"
