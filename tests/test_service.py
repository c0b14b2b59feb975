import random
from datetime import datetime, timedelta
from itertools import combinations

import pytest

from clinica.cache import AvailabilityCache
from clinica.config import SchedulingSettings
from clinica.domain.scheduling.errors import (
    AppointmentNotFound,
    BranchNotFound,
    ConcurrentUpdate,
    DoctorNotFound,
    InvalidTransition,
    NotFound,
    OutsideOpeningHours,
    SlotUnavailable,
    StorageError,
)
from clinica.domain.scheduling.repository import AppointmentQuery, InMemoryAppointmentStore
from clinica.domain.scheduling.schemas import OperatingHours
from clinica.domain.scheduling.service import SchedulingService, cancellation_allowed
from clinica.models import NON_BLOCKING_STATUSES

from .conftest import DAY, StaticDirectory

ALL_SLOTS = ["09:00", "10:00", "11:00", "12:00", "13:00", "14:00", "15:00", "16:00"]


def book(service, start_time, doctor_id="D1", day=DAY, patient_id="P1"):
    return service.schedule_appointment(
        patient_id=patient_id,
        doctor_id=doctor_id,
        branch_id="B1",
        day=day,
        start_time=start_time,
        appointment_type="first_visit",
    )


class TestScheduleAppointment:
    def test_books_a_free_slot(self, service, notifier):
        appointment = book(service, "10:00")

        assert appointment.status == "scheduled"
        assert appointment.end_time == "11:00"
        assert appointment.version == 1
        assert notifier.events == [("scheduled", appointment.id)]

    def test_overlapping_booking_is_rejected(self, service, store, notifier):
        book(service, "10:00")

        with pytest.raises(SlotUnavailable) as exc_info:
            book(service, "10:30", patient_id="P2")

        assert exc_info.value.doctor_id == "D1"
        assert exc_info.value.start_time == "10:30"
        assert len(store) == 1
        assert len(notifier.events) == 1

    def test_other_doctor_is_not_affected(self, service):
        book(service, "10:00")
        assert book(service, "10:00", doctor_id="D2").doctor_id == "D2"

    def test_slot_past_midnight_is_rejected(self, service):
        with pytest.raises(ValueError):
            book(service, "23:30")

    def test_booking_invalidates_cached_availability(self, service, cache):
        assert "10:00" in service.get_doctor_availability("D1", DAY)
        assert cache.get("doctor", "D1", DAY) is not None

        book(service, "10:00")

        assert "10:00" not in service.get_doctor_availability("D1", DAY)

    def test_booking_invalidates_branch_views_of_the_day(self, service, cache):
        service.get_branch_availability("B1", DAY)
        service.get_branch_availability("B2", DAY)

        book(service, "10:00")

        assert cache.get("branch", "B1", DAY) is None
        assert cache.get("branch", "B2", DAY) is None

    def test_notifier_failure_does_not_undo_the_booking(self, store, cache, directory):
        class BrokenNotifier:
            def notify_appointment_event(self, kind, appointment):
                raise ConnectionError("queue down")

        service = SchedulingService(store=store, cache=cache, directory=directory, notifier=BrokenNotifier())
        appointment = book(service, "10:00")

        assert store.find_by_id(appointment.id).status == "scheduled"


class TestRescheduleAppointment:
    def test_does_not_conflict_with_itself(self, service, notifier):
        appointment = book(service, "10:00")

        moved = service.reschedule_appointment(appointment.id, "D1", DAY, "10:30")

        assert (moved.start_time, moved.end_time) == ("10:30", "11:30")
        assert moved.status == "rescheduled"
        assert moved.version == 2
        assert notifier.events[-1] == ("rescheduled", appointment.id)

    def test_conflicting_target_leaves_original_untouched(self, service, store):
        appointment = book(service, "10:00")
        book(service, "14:00", patient_id="P2")

        with pytest.raises(SlotUnavailable):
            service.reschedule_appointment(appointment.id, "D1", DAY, "13:30")

        original = store.find_by_id(appointment.id)
        assert (original.start_time, original.status, original.version) == ("10:00", "scheduled", 1)

    def test_move_across_doctors_and_days_refreshes_both_calendars(self, service):
        next_day = DAY + timedelta(days=1)
        appointment = book(service, "10:00")
        assert "10:00" not in service.get_doctor_availability("D1", DAY)
        assert "15:00" in service.get_doctor_availability("D2", next_day)

        service.reschedule_appointment(appointment.id, "D2", next_day, "15:00")

        assert "10:00" in service.get_doctor_availability("D1", DAY)
        assert "15:00" not in service.get_doctor_availability("D2", next_day)

    def test_can_be_rescheduled_again(self, service):
        appointment = book(service, "10:00")
        service.reschedule_appointment(appointment.id, "D1", DAY, "11:00")
        again = service.reschedule_appointment(appointment.id, "D1", DAY, "12:00")
        assert (again.start_time, again.version) == ("12:00", 3)

    def test_rescheduled_appointment_still_blocks_its_slot(self, service):
        appointment = book(service, "10:00")
        service.reschedule_appointment(appointment.id, "D1", DAY, "11:00")

        with pytest.raises(SlotUnavailable):
            book(service, "11:30", patient_id="P2")

    def test_unknown_appointment(self, service):
        with pytest.raises(AppointmentNotFound):
            service.reschedule_appointment("missing", "D1", DAY, "10:00")

    def test_cancelled_appointment_cannot_be_rescheduled(self, service):
        appointment = book(service, "10:00")
        service.cancel_appointment(appointment.id, "patient request")

        with pytest.raises(InvalidTransition):
            service.reschedule_appointment(appointment.id, "D1", DAY, "11:00")


class TestBookingRules:
    @pytest.fixture
    def directory(self):
        return StaticDirectory(
            branches={"B1": ["D1", "D2"], "B2": ["D5"]},
            hours={"B2": OperatingHours(monday={"open": "08:00", "close": "12:00"})},
        )

    def test_unknown_doctor(self, service, store):
        with pytest.raises(DoctorNotFound) as exc_info:
            book(service, "10:00", doctor_id="ghost-doctor")

        assert exc_info.value.status_code == 404
        assert len(store) == 0

    def test_unknown_branch(self, service, store):
        with pytest.raises(BranchNotFound):
            service.schedule_appointment(
                patient_id="P1", doctor_id="D1", branch_id="ghost-branch",
                day=DAY, start_time="10:00", appointment_type="first_visit",
            )
        assert len(store) == 0

    def test_doctor_must_work_at_the_branch(self, service):
        with pytest.raises(DoctorNotFound) as exc_info:
            book(service, "10:00", doctor_id="D5")
        assert exc_info.value.branch_id == "B1"

    @pytest.mark.parametrize("start_time", ["03:00", "08:30", "16:30", "20:00"])
    def test_slot_outside_business_hours(self, service, store, start_time):
        with pytest.raises(OutsideOpeningHours):
            book(service, start_time)
        assert len(store) == 0

    def test_slot_outside_branch_hours(self, service):
        booking = dict(patient_id="P1", doctor_id="D5", branch_id="B2", day=DAY, appointment_type="follow_up")

        assert service.schedule_appointment(start_time="11:00", **booking).end_time == "12:00"
        with pytest.raises(OutsideOpeningHours):
            service.schedule_appointment(start_time="11:30", **booking)
        with pytest.raises(OutsideOpeningHours):
            # Sunday, B2 is closed
            service.schedule_appointment(start_time="10:00", **{**booking, "day": DAY + timedelta(days=6)})

    def test_reschedule_to_doctor_of_another_branch(self, service, store):
        appointment = book(service, "10:00")

        with pytest.raises(DoctorNotFound):
            service.reschedule_appointment(appointment.id, "D5", DAY, "10:00")
        with pytest.raises(DoctorNotFound):
            service.reschedule_appointment(appointment.id, "ghost-doctor", DAY, "10:00")

        original = store.find_by_id(appointment.id)
        assert (original.doctor_id, original.status, original.version) == ("D1", "scheduled", 1)

    def test_reschedule_outside_hours(self, service):
        appointment = book(service, "10:00")
        with pytest.raises(OutsideOpeningHours):
            service.reschedule_appointment(appointment.id, "D1", DAY, "18:00")

    def test_reschedule_after_branch_closed_down(self, service, directory):
        appointment = book(service, "10:00")
        del directory.branches["B1"]

        with pytest.raises(BranchNotFound):
            service.reschedule_appointment(appointment.id, "D1", DAY, "11:00")

    def test_not_found_family(self):
        for error in (AppointmentNotFound("a1"), DoctorNotFound("D1"), BranchNotFound("B1")):
            assert isinstance(error, NotFound)
            assert error.status_code == 404


class TestCancelAppointment:
    def test_cancel_releases_the_slot(self, service, notifier):
        appointment = book(service, "10:00")
        assert "10:00" not in service.get_doctor_availability("D1", DAY)

        cancelled = service.cancel_appointment(appointment.id, "feeling better")

        assert cancelled.status == "cancelled"
        assert cancelled.cancellation_reason == "feeling better"
        assert "10:00" in service.get_doctor_availability("D1", DAY)
        assert notifier.events[-1] == ("cancelled", appointment.id)

    def test_cancelling_twice_is_rejected_without_a_second_notification(self, service, notifier, store):
        appointment = book(service, "10:00")
        service.cancel_appointment(appointment.id, "first")

        with pytest.raises(InvalidTransition) as exc_info:
            service.cancel_appointment(appointment.id, "second")

        assert exc_info.value.current_status == "cancelled"
        assert [kind for kind, _ in notifier.events] == ["scheduled", "cancelled"]
        assert store.find_by_id(appointment.id).cancellation_reason == "first"

    def test_unknown_appointment(self, service):
        with pytest.raises(AppointmentNotFound):
            service.cancel_appointment("missing", "reason")


class TestStatusTransitions:
    def test_confirm_then_complete(self, service, notifier):
        appointment = book(service, "10:00")

        assert service.confirm_appointment(appointment.id).status == "confirmed"
        assert service.complete_appointment(appointment.id).status == "completed"
        assert [kind for kind, _ in notifier.events] == ["scheduled", "confirmed", "completed"]

    def test_completed_appointment_frees_the_calendar(self, service):
        appointment = book(service, "10:00")
        service.complete_appointment(appointment.id)

        assert "10:00" in service.get_doctor_availability("D1", DAY)
        assert book(service, "10:00", patient_id="P2").status == "scheduled"

    @pytest.mark.parametrize("terminal", ["cancel", "complete"])
    def test_terminal_statuses_are_final(self, service, terminal):
        appointment = book(service, "10:00")
        if terminal == "cancel":
            service.cancel_appointment(appointment.id, "no longer needed")
        else:
            service.complete_appointment(appointment.id)

        with pytest.raises(InvalidTransition):
            service.confirm_appointment(appointment.id)
        with pytest.raises(InvalidTransition):
            service.complete_appointment(appointment.id)

    def test_confirming_twice_is_rejected(self, service):
        appointment = book(service, "10:00")
        service.confirm_appointment(appointment.id)
        with pytest.raises(InvalidTransition):
            service.confirm_appointment(appointment.id)

    def test_stale_version_is_rejected(self, service, store):
        appointment = book(service, "10:00")
        service.confirm_appointment(appointment.id)

        with pytest.raises(ConcurrentUpdate):
            store.update(appointment.id, appointment.version, status="cancelled")

        assert store.find_by_id(appointment.id).status == "confirmed"


class TestDoctorAvailability:
    def test_free_day_lists_every_slot(self, service):
        assert service.get_doctor_availability("D1", DAY) == ALL_SLOTS

    def test_booked_start_times_are_excluded(self, service):
        book(service, "09:00")
        book(service, "15:00")
        assert service.get_doctor_availability("D1", DAY) == [
            "10:00", "11:00", "12:00", "13:00", "14:00", "16:00",
        ]

    def test_result_is_cached_until_ttl(self, service, store, clock):
        service.get_doctor_availability("D1", DAY)
        # Written behind the service's back, so only expiry can reveal it
        store.create(
            patient_id="P9", doctor_id="D1", branch_id="B1", date=DAY,
            start_time="12:00", end_time="13:00", type="follow_up",
        )
        assert "12:00" in service.get_doctor_availability("D1", DAY)

        clock.advance(300)
        assert "12:00" not in service.get_doctor_availability("D1", DAY)

    def test_works_with_cache_disabled(self, store, directory):
        service = SchedulingService(store=store, cache=AvailabilityCache(enabled=False), directory=directory)
        book(service, "10:00")
        assert "10:00" not in service.get_doctor_availability("D1", DAY)

    def test_settings_control_hours_and_duration(self, store, cache, directory):
        settings = SchedulingSettings(
            business_hours_start="08:00", business_hours_end="10:00", appointment_duration_minutes=30
        )
        service = SchedulingService(store=store, cache=cache, directory=directory, settings=settings)

        assert service.get_doctor_availability("D1", DAY) == ["08:00", "08:30", "09:00", "09:30"]
        assert book(service, "08:30").end_time == "09:00"


class FlakyStore(InMemoryAppointmentStore):
    """Fails every lookup for one doctor"""

    def __init__(self, failing_doctor):
        super().__init__()
        self.failing_doctor = failing_doctor

    def find_many(self, query: AppointmentQuery):
        if query.doctor_id == self.failing_doctor:
            raise StorageError("replica timeout")
        return super().find_many(query)


class TestBranchAvailability:
    def test_lists_every_doctor_of_the_branch(self, service):
        book(service, "10:00", doctor_id="D2")

        results = service.get_branch_availability("B1", DAY)

        assert [r["doctor"]["id"] for r in results] == ["D1", "D2"]
        assert results[0]["availableSlots"] == ALL_SLOTS
        assert "10:00" not in results[1]["availableSlots"]
        assert all(r["error"] is None for r in results)

    def test_unknown_branch_is_empty(self, service):
        assert service.get_branch_availability("nowhere", DAY) == []

    def test_partial_failure_keeps_other_doctors(self, cache, directory):
        service = SchedulingService(store=FlakyStore("D2"), cache=cache, directory=directory)

        results = service.get_branch_availability("B1", DAY)

        assert results[0]["availableSlots"] == ALL_SLOTS
        assert results[1]["availableSlots"] is None
        assert "replica timeout" in results[1]["error"]
        # Partial views are never cached
        assert cache.get("branch", "B1", DAY) is None

    def test_complete_view_is_cached(self, service, cache):
        results = service.get_branch_availability("B1", DAY)
        assert cache.get("branch", "B1", DAY) == results

    def test_slots_are_clipped_to_branch_hours(self, store, cache):
        directory = StaticDirectory(
            branches={"B1": ["D1"]},
            hours={"B1": OperatingHours(monday={"open": "10:00", "close": "13:00"})},
        )
        service = SchedulingService(store=store, cache=cache, directory=directory)

        results = service.get_branch_availability("B1", DAY)

        assert results[0]["availableSlots"] == ["10:00", "11:00", "12:00"]

    def test_closed_day_has_no_slots(self, store, cache):
        directory = StaticDirectory(branches={"B1": ["D1"]}, hours={"B1": OperatingHours()})
        service = SchedulingService(store=store, cache=cache, directory=directory)
        sunday = DAY + timedelta(days=6)

        results = service.get_branch_availability("B1", sunday)

        assert results[0]["availableSlots"] == []


class TestSchedules:
    def test_doctor_schedule_is_ordered_and_filtered(self, service):
        next_day = DAY + timedelta(days=1)
        later = book(service, "09:00", day=next_day)
        afternoon = book(service, "15:00")
        morning = book(service, "09:00")
        book(service, "11:00", doctor_id="D2")

        schedule = service.get_doctor_schedule("D1")
        assert [a.id for a in schedule] == [morning.id, afternoon.id, later.id]

        first_day = service.get_doctor_schedule("D1", start_date=DAY, end_date=DAY)
        assert [a.id for a in first_day] == [morning.id, afternoon.id]

    def test_patient_schedule_includes_cancelled(self, service):
        kept = book(service, "09:00", patient_id="P7")
        dropped = book(service, "13:00", doctor_id="D2", patient_id="P7")
        service.cancel_appointment(dropped.id, "clash")

        schedule = service.get_patient_schedule("P7", start_date=DAY)
        assert [(a.id, a.status) for a in schedule] == [(kept.id, "scheduled"), (dropped.id, "cancelled")]


def test_end_to_end_booking_scenario(service):
    first = book(service, "10:00")
    assert first.status == "scheduled"

    with pytest.raises(SlotUnavailable):
        book(service, "10:30", patient_id="P2")

    assert service.cancel_appointment(first.id, "rescheduling elsewhere").status == "cancelled"

    second = book(service, "10:30", patient_id="P2")
    assert (second.start_time, second.end_time, second.status) == ("10:30", "11:30", "scheduled")


class TestCancellationNotice:
    def test_allowed_well_ahead(self, service):
        appointment = book(service, "10:00")
        assert cancellation_allowed(appointment, datetime(2025, 3, 8, 10, 0))

    def test_refused_inside_notice_window(self, service):
        appointment = book(service, "10:00")
        assert not cancellation_allowed(appointment, datetime(2025, 3, 9, 10, 0))
        assert not cancellation_allowed(appointment, datetime(2025, 3, 9, 18, 0))

    def test_custom_notice(self, service):
        appointment = book(service, "10:00")
        assert cancellation_allowed(appointment, datetime(2025, 3, 10, 7, 0), notice_hours=2)


@pytest.mark.parametrize("seed", range(8))
def test_random_operations_never_double_book(seed):
    rng = random.Random(seed)
    store = InMemoryAppointmentStore()
    cache = AvailabilityCache()
    directory = StaticDirectory(branches={"B1": ["D1", "D2"]})
    service = SchedulingService(store=store, cache=cache, directory=directory)
    uncached = SchedulingService(store=store, cache=AvailabilityCache(enabled=False), directory=directory)

    doctors = ["D1", "D2"]
    days = [DAY, DAY + timedelta(days=1)]
    starts = [f"{h:02d}:{m:02d}" for h in range(9, 16) for m in (0, 30)]
    ids = []

    for _ in range(60):
        action = rng.choice(["book", "book", "reschedule", "cancel", "complete"])
        try:
            if action == "book" or not ids:
                appointment = book(service, rng.choice(starts), rng.choice(doctors), rng.choice(days))
                ids.append(appointment.id)
            elif action == "reschedule":
                service.reschedule_appointment(
                    rng.choice(ids), rng.choice(doctors), rng.choice(days), rng.choice(starts)
                )
            elif action == "cancel":
                service.cancel_appointment(rng.choice(ids), "random")
            else:
                service.complete_appointment(rng.choice(ids))
        except (SlotUnavailable, InvalidTransition):
            pass

        for doctor_id in doctors:
            for day in days:
                active = store.find_many(
                    AppointmentQuery(doctor_id=doctor_id, day=day, status_not_in=NON_BLOCKING_STATUSES)
                )
                for a, b in combinations(active, 2):
                    assert not (a.start_time < b.end_time and b.start_time < a.end_time), (a, b)
                assert service.get_doctor_availability(doctor_id, day) == uncached.get_doctor_availability(
                    doctor_id, day
                )
