"""Scheduling service - booking, rescheduling and availability for clinic doctors"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Optional

from ...cache import AvailabilityCache
from ...config import SchedulingSettings
from ...models import NON_BLOCKING_STATUSES, Appointment
from ...notifications import AppointmentEvent, LoggingNotifier, Notifier
from .conflicts import ConflictDetector
from .directory import DoctorDirectory
from .errors import (
    AppointmentNotFound,
    BranchNotFound,
    DoctorNotFound,
    InvalidTransition,
    OutsideOpeningHours,
    SlotUnavailable,
)
from .locks import SlotLockRegistry
from .repository import AppointmentQuery, AppointmentStore
from .schemas import BusinessHours
from .slots import calculate_end_time, generate_time_slots, to_minutes

logger = logging.getLogger(__name__)

# cancelled and completed are terminal; rescheduled keeps behaving as a live booking
ALLOWED_TRANSITIONS = {
    "scheduled": {"confirmed", "rescheduled", "completed", "cancelled"},
    "confirmed": {"rescheduled", "completed", "cancelled"},
    "rescheduled": {"confirmed", "rescheduled", "completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}


def cancellation_allowed(appointment: Appointment, now: datetime, notice_hours: int = 24) -> bool:
    """True when the appointment starts more than notice_hours after now"""
    starts_at = datetime.combine(appointment.date, time.fromisoformat(appointment.start_time))
    return now < starts_at - timedelta(hours=notice_hours)


class SchedulingService:
    """
    Orchestrates the appointment store, conflict detection and the availability cache.

    Writes re-check conflicts inside a store transaction while holding the
    (doctor, date) lock, so the check and the write see the same state. The
    cache is only touched after the transaction commits.
    """

    def __init__(
        self,
        store: AppointmentStore,
        cache: AvailabilityCache,
        directory: DoctorDirectory,
        notifier: Optional[Notifier] = None,
        locks: Optional[SlotLockRegistry] = None,
        settings: Optional[SchedulingSettings] = None,
    ):
        self.store = store
        self.cache = cache
        self.directory = directory
        self.notifier = notifier or LoggingNotifier()
        self.locks = locks if locks is not None else SlotLockRegistry()
        self.settings = settings or SchedulingSettings()
        self.conflicts = ConflictDetector(store)
        self.business_hours = BusinessHours(
            start=self.settings.business_hours_start, end=self.settings.business_hours_end
        )

    @property
    def duration(self) -> int:
        return self.settings.appointment_duration_minutes

    # ========================================================================
    # WRITES
    # ========================================================================

    def schedule_appointment(
        self,
        patient_id: str,
        doctor_id: str,
        branch_id: str,
        day: date,
        start_time: str,
        appointment_type: str,
        notes: Optional[str] = None,
    ) -> Appointment:
        """
        Book a new appointment.

        The doctor and branch must be active, the doctor must work at the branch
        and the slot must fit the opening hours. Raises SlotUnavailable when the
        doctor is busy.
        """
        end_time = calculate_end_time(start_time, self.duration)
        self._check_bookable(doctor_id, branch_id, day, start_time, end_time)
        logger.info(f"📅 Booking doctor {doctor_id} on {day} {start_time}-{end_time} for {patient_id}")

        with self.locks.hold((doctor_id, day)):
            with self.store.transaction():
                self.store.lock_slot(doctor_id, day)
                if not self.conflicts.is_available(doctor_id, day, start_time, end_time):
                    logger.warning(f"⚠️ Slot taken: doctor {doctor_id} {day} {start_time}")
                    raise SlotUnavailable(doctor_id, day, start_time, end_time)

                appointment = self.store.create(
                    patient_id=patient_id,
                    doctor_id=doctor_id,
                    branch_id=branch_id,
                    date=day,
                    start_time=start_time,
                    end_time=end_time,
                    status="scheduled",
                    type=appointment_type,
                    notes=notes,
                    version=1,
                )

        self._invalidate((doctor_id, day))
        logger.info(f"✅ Appointment {appointment.id} scheduled")
        self._notify("scheduled", appointment)
        return appointment

    def reschedule_appointment(
        self, appointment_id: str, new_doctor_id: str, new_date: date, new_start_time: str
    ) -> Appointment:
        """
        Move an appointment to a new doctor, date or start time.

        The branch stays the same, so the new doctor must work there. The
        appointment never conflicts with itself. On SlotUnavailable the
        original booking is left untouched.
        """
        current = self.get_appointment(appointment_id)
        self._check_transition(current, "rescheduled")

        end_time = calculate_end_time(new_start_time, self.duration)
        self._check_bookable(new_doctor_id, current.branch_id, new_date, new_start_time, end_time)
        old_slot = (current.doctor_id, current.date)
        new_slot = (new_doctor_id, new_date)
        logger.info(
            f"🔁 Rescheduling {appointment_id} from {current.doctor_id} {current.date} "
            f"{current.start_time} to {new_doctor_id} {new_date} {new_start_time}"
        )

        with self.locks.hold(old_slot, new_slot):
            with self.store.transaction():
                for doctor_id, day in sorted({old_slot, new_slot}):
                    self.store.lock_slot(doctor_id, day)

                if not self.conflicts.is_available(
                    new_doctor_id, new_date, new_start_time, end_time,
                    exclude_appointment_id=appointment_id,
                ):
                    logger.warning(f"⚠️ Reschedule target taken: {new_doctor_id} {new_date} {new_start_time}")
                    raise SlotUnavailable(new_doctor_id, new_date, new_start_time, end_time)

                # Compare-and-swap against the version read above
                appointment = self.store.update(
                    appointment_id,
                    current.version,
                    doctor_id=new_doctor_id,
                    date=new_date,
                    start_time=new_start_time,
                    end_time=end_time,
                    status="rescheduled",
                )

        self._invalidate(old_slot, new_slot)
        logger.info(f"✅ Appointment {appointment_id} rescheduled")
        self._notify("rescheduled", appointment)
        return appointment

    def cancel_appointment(self, appointment_id: str, reason: str) -> Appointment:
        """
        Cancel an appointment and release its slot.

        The 24-hour notice rule is the caller's to enforce (see cancellation_allowed).
        Cancelling twice raises InvalidTransition and sends no second notification.
        """
        current = self.get_appointment(appointment_id)
        self._check_transition(current, "cancelled")

        slot = (current.doctor_id, current.date)
        with self.locks.hold(slot):
            with self.store.transaction():
                appointment = self.store.update(
                    appointment_id,
                    current.version,
                    status="cancelled",
                    cancellation_reason=reason,
                )

        self._invalidate(slot)
        logger.info(f"🚫 Appointment {appointment_id} cancelled: {reason}")
        self._notify("cancelled", appointment)
        return appointment

    def confirm_appointment(self, appointment_id: str) -> Appointment:
        current = self.get_appointment(appointment_id)
        self._check_transition(current, "confirmed")

        with self.store.transaction():
            appointment = self.store.update(appointment_id, current.version, status="confirmed")

        # Still holds its slot, nothing to invalidate
        self._notify("confirmed", appointment)
        return appointment

    def complete_appointment(self, appointment_id: str) -> Appointment:
        current = self.get_appointment(appointment_id)
        self._check_transition(current, "completed")

        slot = (current.doctor_id, current.date)
        with self.locks.hold(slot):
            with self.store.transaction():
                appointment = self.store.update(appointment_id, current.version, status="completed")

        self._invalidate(slot)
        self._notify("completed", appointment)
        return appointment

    # ========================================================================
    # READS
    # ========================================================================

    def get_appointment(self, appointment_id: str) -> Appointment:
        appointment = self.store.find_by_id(appointment_id)
        if appointment is None:
            raise AppointmentNotFound(appointment_id)
        return appointment

    def get_doctor_availability(self, doctor_id: str, day: date) -> list[str]:
        """Free start times of a doctor on one day"""
        cached = self.cache.get("doctor", doctor_id, day)
        if cached is not None:
            return cached

        booked = {
            a.start_time
            for a in self.store.find_many(
                AppointmentQuery(doctor_id=doctor_id, day=day, status_not_in=NON_BLOCKING_STATUSES)
            )
        }
        # Exact start-time match only: this lists free starting points, booking re-checks overlap
        available = [
            slot for slot in generate_time_slots(self.business_hours, self.duration) if slot not in booked
        ]

        self.cache.put("doctor", doctor_id, day, available, self.settings.cache_ttl)
        return available

    def get_branch_availability(self, branch_id: str, day: date) -> list[dict]:
        """
        Availability of every doctor assigned to a branch, clipped to the branch's hours.

        A doctor whose lookup fails is reported with availableSlots=None and an
        error message; the others are still returned. Partial results are not cached.
        """
        cached = self.cache.get("branch", branch_id, day)
        if cached is not None:
            return cached

        doctors = self.directory.list_doctors_for_branch(branch_id)
        operating_hours = self.directory.get_operating_hours(branch_id)
        window = operating_hours.for_date(day) if operating_hours else self.business_hours

        results = []
        complete = True
        for doctor in doctors:
            entry = {"doctor": doctor.model_dump(), "availableSlots": None, "error": None}
            try:
                slots = self.get_doctor_availability(doctor.id, day)
            except Exception as e:
                complete = False
                entry["error"] = str(e)
                logger.error(f"❌ Availability lookup failed for doctor {doctor.id} on {day}: {e}")
            else:
                entry["availableSlots"] = self._within(slots, window)
            results.append(entry)

        if complete:
            self.cache.put("branch", branch_id, day, results, self.settings.cache_ttl)
        return results

    def get_doctor_schedule(
        self, doctor_id: str, start_date: Optional[date] = None, end_date: Optional[date] = None
    ) -> list[Appointment]:
        return self.store.find_many(
            AppointmentQuery(doctor_id=doctor_id, date_from=start_date, date_to=end_date)
        )

    def get_patient_schedule(
        self, patient_id: str, start_date: Optional[date] = None, end_date: Optional[date] = None
    ) -> list[Appointment]:
        return self.store.find_many(
            AppointmentQuery(patient_id=patient_id, date_from=start_date, date_to=end_date)
        )

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _within(self, slots: list[str], window: Optional[BusinessHours]) -> list[str]:
        if window is None:
            return []
        close = to_minutes(window.end)
        return [s for s in slots if s >= window.start and to_minutes(s) + self.duration <= close]

    def _check_bookable(self, doctor_id: str, branch_id: str, day: date, start_time: str, end_time: str) -> None:
        branch = self.directory.get_branch(branch_id)
        if branch is None:
            raise BranchNotFound(branch_id)

        doctor = self.directory.get_doctor(doctor_id)
        if doctor is None:
            raise DoctorNotFound(doctor_id)
        if doctor.branch_id != branch_id:
            raise DoctorNotFound(doctor_id, branch_id)

        windows = [self.business_hours]
        if branch.operating_hours is not None:
            windows.append(branch.operating_hours.for_date(day))
        for window in windows:
            # None: branch closed that weekday
            if window is None or not (window.start <= start_time and end_time <= window.end):
                raise OutsideOpeningHours(branch_id, day, start_time, end_time)

    def _check_transition(self, appointment: Appointment, target: str) -> None:
        if target not in ALLOWED_TRANSITIONS.get(appointment.status, set()):
            raise InvalidTransition(appointment.id, appointment.status, target)

    def _invalidate(self, *slots: tuple[str, date]) -> None:
        for doctor_id, day in set(slots):
            self.cache.invalidate("doctor", doctor_id, day)
        # Any branch view of those days may list the doctor
        for day in {day for _, day in slots}:
            self.cache.invalidate_scope_for_date("branch", day)

    def _notify(self, kind: AppointmentEvent, appointment: Appointment) -> None:
        try:
            self.notifier.notify_appointment_event(kind, appointment)
        except Exception as e:
            # Fire-and-forget: the booking stands even if the notification cannot be queued
            logger.error(f"❌ Failed to dispatch {kind} notification for {appointment.id}: {e}")
