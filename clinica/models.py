"""
Scheduling models: appointments plus the read-only branch/doctor directory tables
"""

import uuid

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.types import TypeDecorator

from .database import Base
from .domain.scheduling.schemas import OperatingHours

# Statuses that no longer hold a slot on the doctor's calendar
NON_BLOCKING_STATUSES = ("cancelled", "completed")
ACTIVE_SLOT_PREDICATE = "status NOT IN ('cancelled', 'completed')"


def generate_id():
    """Generate a unique opaque identifier"""
    return str(uuid.uuid4())


class OperatingHoursType(TypeDecorator):
    """JSON column validated into OperatingHours once, at the storage boundary"""

    impl = JSON
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, OperatingHours):
            value = OperatingHours.model_validate(value)
        return value.model_dump(mode="json")

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return OperatingHours.model_validate(value)


class Branch(Base):
    __tablename__ = "branches"

    id = Column(String(36), primary_key=True, default=generate_id)
    name = Column(String(255), nullable=False)
    status = Column(String(20), default="active", nullable=False)  # active, inactive, maintenance
    operating_hours = Column(OperatingHoursType, nullable=False, default=lambda: OperatingHours())

    doctors = relationship("Doctor", back_populates="branch")


class Doctor(Base):
    __tablename__ = "doctors"

    id = Column(String(36), primary_key=True, default=generate_id)
    branch_id = Column(String(36), ForeignKey("branches.id"), nullable=True, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    specialization = Column(String(255), nullable=True)
    status = Column(String(20), default="active", nullable=False)  # active, inactive

    branch = relationship("Branch", back_populates="doctors")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(String(36), primary_key=True, default=generate_id)

    # References to entities owned by other services
    patient_id = Column(String(36), nullable=False)
    doctor_id = Column(String(36), nullable=False)
    branch_id = Column(String(36), nullable=False)

    # Scheduling
    date = Column(Date, nullable=False)
    start_time = Column(String(5), nullable=False)  # HH:MM format
    end_time = Column(String(5), nullable=False)

    # Status workflow: scheduled → confirmed → completed
    # rescheduled: moved in place, still holds its slot
    # cancelled / completed: terminal, slot released
    status = Column(String(20), default="scheduled", nullable=False, index=True)
    type = Column(String(20), nullable=False)  # first_visit, follow_up

    notes = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    # Incremented on every update; writers compare-and-swap on it
    version = Column(Integer, default=1, nullable=False)

    # Timestamps
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_appointments_doctor_date", "doctor_id", "date"),
        Index("ix_appointments_patient", "patient_id"),
        # Two active bookings can never share a doctor's start time
        Index(
            "uq_appointments_active_slot",
            "doctor_id",
            "date",
            "start_time",
            unique=True,
            postgresql_where=text(ACTIVE_SLOT_PREDICATE),
            sqlite_where=text(ACTIVE_SLOT_PREDICATE),
        ),
        CheckConstraint("start_time < end_time", name="ck_appointments_time_order"),
    )

    def __repr__(self):
        return (
            f"<Appointment {self.id} doctor={self.doctor_id} "
            f"{self.date} {self.start_time}-{self.end_time} {self.status}>"
        )
