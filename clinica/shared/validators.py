"""Shared validation utilities"""

import re
from typing import Optional

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def validate_time_of_day(value: Optional[str]) -> Optional[str]:
    """
    Validate a 24-hour wall-clock time.

    Args:
        value: Time string such as "09:30"

    Returns:
        The time string, unchanged

    Raises:
        ValueError: If the value is not zero-padded HH:MM
    """
    if value is None:
        return value
    if not TIME_PATTERN.match(value):
        raise ValueError("Time must be in HH:MM 24-hour format")
    return value
