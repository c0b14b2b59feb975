"""Wall-clock arithmetic and slot generation for a business day"""

from functools import lru_cache

from .schemas import BusinessHours

MINUTES_PER_DAY = 24 * 60


def to_minutes(time_of_day: str) -> int:
    """Convert "HH:MM" to minutes since midnight"""
    hours, minutes = time_of_day.split(":")
    return int(hours) * 60 + int(minutes)


def from_minutes(total_minutes: int) -> str:
    """Convert minutes since midnight to "HH:MM" """
    if not 0 <= total_minutes <= MINUTES_PER_DAY:
        raise ValueError(f"{total_minutes} minutes is outside a single day")
    hours, minutes = divmod(total_minutes, 60)
    return f"{hours:02d}:{minutes:02d}"


def calculate_end_time(start_time: str, duration_minutes: int) -> str:
    """
    End of an appointment starting at start_time.

    Raises:
        ValueError: If the appointment would run past midnight
    """
    end = to_minutes(start_time) + duration_minutes
    if end >= MINUTES_PER_DAY:
        raise ValueError(f"Appointment starting at {start_time} would end after midnight")
    return from_minutes(end)


@lru_cache(maxsize=128)
def generate_time_slots(business_hours: BusinessHours, slot_duration_minutes: int) -> tuple[str, ...]:
    """
    Candidate start times for one business day.

    Walks from business_hours.start in slot_duration_minutes steps and keeps
    every start whose whole slot ends no later than business_hours.end.
    Walking "strictly before end" alone would also offer a start whose slot
    runs past closing (11:00 for 09:00-11:30 in 60-minute steps); such starts
    are dropped, since booking them would end after hours.
    A duration that does not fit strictly inside the window yields no slots.
    """
    if slot_duration_minutes <= 0:
        raise ValueError("Slot duration must be a positive number of minutes")

    start = to_minutes(business_hours.start)
    end = to_minutes(business_hours.end)
    if slot_duration_minutes >= end - start:
        return ()

    return tuple(
        from_minutes(minute)
        for minute in range(start, end - slot_duration_minutes + 1, slot_duration_minutes)
    )
