"""Appointment store - database operations for appointments"""

import hashlib
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from threading import RLock
from typing import ContextManager, Optional, Protocol

from sqlalchemy import text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ...models import NON_BLOCKING_STATUSES, Appointment, generate_id
from .errors import AppointmentNotFound, ConcurrentUpdate, SchedulingError, SlotUnavailable, StorageError


@dataclass(frozen=True)
class AppointmentQuery:
    """Predicate for AppointmentStore.find_many; unset fields do not filter"""

    doctor_id: Optional[str] = None
    patient_id: Optional[str] = None
    day: Optional[date] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    status_not_in: tuple[str, ...] = ()
    exclude_id: Optional[str] = None
    overlaps: Optional[tuple[str, str]] = None  # (start_time, end_time)

    def matches(self, appointment: Appointment) -> bool:
        if self.doctor_id is not None and appointment.doctor_id != self.doctor_id:
            return False
        if self.patient_id is not None and appointment.patient_id != self.patient_id:
            return False
        if self.day is not None and appointment.date != self.day:
            return False
        if self.date_from is not None and appointment.date < self.date_from:
            return False
        if self.date_to is not None and appointment.date > self.date_to:
            return False
        if appointment.status in self.status_not_in:
            return False
        if self.exclude_id is not None and appointment.id == self.exclude_id:
            return False
        if self.overlaps is not None:
            start, end = self.overlaps
            if not (appointment.start_time < end and start < appointment.end_time):
                return False
        return True


class AppointmentStore(Protocol):
    def transaction(self) -> ContextManager[None]: ...

    def lock_slot(self, doctor_id: str, day: date) -> None: ...

    def create(self, **fields) -> Appointment: ...

    def find_by_id(self, appointment_id: str) -> Optional[Appointment]: ...

    def find_many(self, query: AppointmentQuery) -> list[Appointment]: ...

    def update(self, appointment_id: str, expected_version: int, **fields) -> Appointment: ...


def advisory_lock_key(doctor_id: str, day: date) -> int:
    """Stable signed 64-bit key for pg_advisory_xact_lock"""
    digest = hashlib.sha256(f"appointments:{doctor_id}:{day.isoformat()}".encode()).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


class AppointmentRepository:
    """SQLAlchemy-backed appointment store bound to one session"""

    def __init__(self, db: Session):
        self.db = db

    @contextmanager
    def transaction(self):
        """Commit on success, roll back on any error; SQLAlchemy errors surface as StorageError"""
        try:
            yield
            self.db.commit()
        except SchedulingError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Appointment storage failure: {e}") from e
        except BaseException:
            self.db.rollback()
            raise

    def lock_slot(self, doctor_id: str, day: date) -> None:
        """Serialise writers of one doctor/day across processes (PostgreSQL only)"""
        if self.db.get_bind().dialect.name != "postgresql":
            return
        self.db.execute(
            text("SELECT pg_advisory_xact_lock(:key)"), {"key": advisory_lock_key(doctor_id, day)}
        )

    def create(self, **fields) -> Appointment:
        appointment = Appointment(**fields)
        self.db.add(appointment)
        try:
            self.db.flush()
        except IntegrityError as e:
            # The active-slot unique index is the only constraint a valid booking can hit
            raise SlotUnavailable(
                fields["doctor_id"], fields["date"], fields["start_time"], fields["end_time"]
            ) from e
        return appointment

    @contextmanager
    def _reading(self):
        try:
            yield
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Appointment lookup failed: {e}") from e

    def find_by_id(self, appointment_id: str) -> Optional[Appointment]:
        with self._reading():
            return self.db.query(Appointment).filter(Appointment.id == appointment_id).first()

    def find_many(self, query: AppointmentQuery) -> list[Appointment]:
        q = self.db.query(Appointment)

        if query.doctor_id is not None:
            q = q.filter(Appointment.doctor_id == query.doctor_id)
        if query.patient_id is not None:
            q = q.filter(Appointment.patient_id == query.patient_id)
        if query.day is not None:
            q = q.filter(Appointment.date == query.day)
        if query.date_from is not None:
            q = q.filter(Appointment.date >= query.date_from)
        if query.date_to is not None:
            q = q.filter(Appointment.date <= query.date_to)
        if query.status_not_in:
            q = q.filter(Appointment.status.notin_(query.status_not_in))
        if query.exclude_id is not None:
            q = q.filter(Appointment.id != query.exclude_id)
        if query.overlaps is not None:
            start, end = query.overlaps
            q = q.filter(Appointment.start_time < end, Appointment.end_time > start)

        with self._reading():
            return q.order_by(Appointment.date, Appointment.start_time).all()

    def update(self, appointment_id: str, expected_version: int, **fields) -> Appointment:
        """Compare-and-swap update; bumps version on success"""
        statement = (
            update(Appointment)
            .where(Appointment.id == appointment_id, Appointment.version == expected_version)
            .values(version=Appointment.version + 1, **fields)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db.execute(statement)
        except IntegrityError as e:
            raise SlotUnavailable(
                fields.get("doctor_id"), fields.get("date"), fields.get("start_time"), fields.get("end_time")
            ) from e

        if result.rowcount == 0:
            if self.db.get(Appointment, appointment_id) is None:
                raise AppointmentNotFound(appointment_id)
            raise ConcurrentUpdate(appointment_id)

        return self.db.get(Appointment, appointment_id, populate_existing=True)


def _copy(appointment: Appointment) -> Appointment:
    return Appointment(
        **{column.key: getattr(appointment, column.key) for column in Appointment.__table__.columns}
    )


class InMemoryAppointmentStore:
    """
    Dict-backed appointment store with the same contract as AppointmentRepository.

    Transactions hold one re-entrant lock and restore a snapshot on error, and
    the active-slot uniqueness rule of the database index is enforced on write.
    Records are copied in and out so callers never share state with the store.
    """

    def __init__(self):
        self._records: dict[str, Appointment] = {}
        self._lock = RLock()

    @contextmanager
    def transaction(self):
        with self._lock:
            snapshot = dict(self._records)
            try:
                yield
            except BaseException:
                self._records = snapshot
                raise

    def lock_slot(self, doctor_id: str, day: date) -> None:
        return None

    def _check_unique_slot(self, candidate: Appointment) -> None:
        if candidate.status in NON_BLOCKING_STATUSES:
            return
        for other in self._records.values():
            if (
                other.id != candidate.id
                and other.status not in NON_BLOCKING_STATUSES
                and other.doctor_id == candidate.doctor_id
                and other.date == candidate.date
                and other.start_time == candidate.start_time
            ):
                raise SlotUnavailable(
                    candidate.doctor_id, candidate.date, candidate.start_time, candidate.end_time
                )

    def create(self, **fields) -> Appointment:
        now = datetime.now()
        fields.setdefault("id", generate_id())
        fields.setdefault("status", "scheduled")
        fields.setdefault("version", 1)
        fields.setdefault("created_at", now)
        fields.setdefault("updated_at", now)
        appointment = Appointment(**fields)
        with self._lock:
            self._check_unique_slot(appointment)
            self._records[appointment.id] = appointment
        return _copy(appointment)

    def find_by_id(self, appointment_id: str) -> Optional[Appointment]:
        with self._lock:
            appointment = self._records.get(appointment_id)
            return _copy(appointment) if appointment else None

    def find_many(self, query: AppointmentQuery) -> list[Appointment]:
        with self._lock:
            matches = [_copy(a) for a in self._records.values() if query.matches(a)]
        return sorted(matches, key=lambda a: (a.date, a.start_time))

    def update(self, appointment_id: str, expected_version: int, **fields) -> Appointment:
        with self._lock:
            current = self._records.get(appointment_id)
            if current is None:
                raise AppointmentNotFound(appointment_id)
            if current.version != expected_version:
                raise ConcurrentUpdate(appointment_id)

            updated = _copy(current)
            for key, value in fields.items():
                setattr(updated, key, value)
            updated.version = current.version + 1
            updated.updated_at = datetime.now()

            self._check_unique_slot(updated)
            self._records[appointment_id] = updated
            return _copy(updated)

    def __len__(self) -> int:
        return len(self._records)
