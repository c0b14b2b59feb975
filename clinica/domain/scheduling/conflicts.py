"""Time-overlap conflict detection between appointments of one doctor"""

import logging
from datetime import date
from typing import Optional

from ...models import NON_BLOCKING_STATUSES, Appointment
from .repository import AppointmentQuery, AppointmentStore

logger = logging.getLogger(__name__)


def intervals_overlap(start_a: str, end_a: str, start_b: str, end_b: str) -> bool:
    """Half-open [start, end) intervals overlap iff each starts before the other ends"""
    return start_a < end_b and start_b < end_a


class ConflictDetector:
    """Read-only check of a proposed interval against the appointment store"""

    def __init__(self, store: AppointmentStore):
        self.store = store

    def find_conflicts(
        self,
        doctor_id: str,
        day: date,
        start_time: str,
        end_time: str,
        exclude_appointment_id: Optional[str] = None,
    ) -> list[Appointment]:
        query = AppointmentQuery(
            doctor_id=doctor_id,
            day=day,
            status_not_in=NON_BLOCKING_STATUSES,
            exclude_id=exclude_appointment_id,
            overlaps=(start_time, end_time),
        )
        return self.store.find_many(query)

    def is_available(
        self,
        doctor_id: str,
        day: date,
        start_time: str,
        end_time: str,
        exclude_appointment_id: Optional[str] = None,
    ) -> bool:
        conflicts = self.find_conflicts(doctor_id, day, start_time, end_time, exclude_appointment_id)
        if conflicts:
            logger.debug(
                f"⛔ {doctor_id} {day} {start_time}-{end_time} conflicts with "
                f"{[a.id for a in conflicts]}"
            )
        return not conflicts
