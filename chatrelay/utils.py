"""Utility functions for the relay."""

import time
from typing import Optional


def now_ms() -> int:
    """Current epoch time in milliseconds (the gate's clock)."""
    return time.time_ns() // 1_000_000


def parse_optional_int(value: Optional[str]) -> Optional[int]:
    """
    Parse a query-string integer, returning None for empty or junk input.

    Args:
        value: Raw string from the request

    Returns:
        Parsed integer or None
    """
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        return None
