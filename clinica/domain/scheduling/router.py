"""Scheduling router - FastAPI endpoints for appointments and availability"""

import logging
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from ...database import get_db
from .directory import SqlDoctorDirectory
from .repository import AppointmentRepository
from .schemas import (
    AppointmentCancel,
    AppointmentCreate,
    AppointmentReschedule,
    AppointmentResponse,
    BranchAvailability,
    DoctorAvailability,
)
from .service import ALLOWED_TRANSITIONS, SchedulingService, cancellation_allowed

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/appointments", tags=["Appointments"])


def get_scheduling_service(request: Request, db: Session = Depends(get_db)) -> SchedulingService:
    """Dependency injection for SchedulingService; process-wide parts live on app.state"""
    state = request.app.state
    return SchedulingService(
        store=AppointmentRepository(db),
        cache=state.availability_cache,
        directory=SqlDoctorDirectory(db),
        notifier=state.notifier,
        locks=state.slot_locks,
        settings=state.scheduling_settings,
    )


# ============================================================================
# BOOKING
# ============================================================================


@router.post("", response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def schedule_appointment(
    data: AppointmentCreate,
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Book an appointment; 409 when the doctor is already busy"""
    try:
        appointment = service.schedule_appointment(
            patient_id=data.patientId,
            doctor_id=data.doctorId,
            branch_id=data.branchId,
            day=data.date,
            start_time=data.startTime,
            appointment_type=data.type,
            notes=data.notes,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return AppointmentResponse.model_validate(appointment)


@router.post("/{appointment_id}/reschedule", response_model=AppointmentResponse)
def reschedule_appointment(
    appointment_id: str,
    data: AppointmentReschedule,
    service: SchedulingService = Depends(get_scheduling_service),
):
    try:
        appointment = service.reschedule_appointment(
            appointment_id, data.doctorId, data.date, data.startTime
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return AppointmentResponse.model_validate(appointment)


@router.post("/{appointment_id}/cancel", response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: str,
    data: AppointmentCancel,
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Cancel an appointment; refused inside the notice window before its start"""
    notice_hours = service.settings.cancellation_notice_hours
    appointment = service.get_appointment(appointment_id)
    # Terminal appointments fall through to the engine, which answers 409
    cancellable = "cancelled" in ALLOWED_TRANSITIONS.get(appointment.status, set())
    if cancellable and not cancellation_allowed(appointment, datetime.now(), notice_hours):
        raise HTTPException(
            status_code=400,
            detail=f"Appointment cannot be cancelled less than {notice_hours} hours before",
        )

    appointment = service.cancel_appointment(appointment_id, data.reason)
    return AppointmentResponse.model_validate(appointment)


@router.post("/{appointment_id}/confirm", response_model=AppointmentResponse)
def confirm_appointment(
    appointment_id: str,
    service: SchedulingService = Depends(get_scheduling_service),
):
    return AppointmentResponse.model_validate(service.confirm_appointment(appointment_id))


@router.post("/{appointment_id}/complete", response_model=AppointmentResponse)
def complete_appointment(
    appointment_id: str,
    service: SchedulingService = Depends(get_scheduling_service),
):
    return AppointmentResponse.model_validate(service.complete_appointment(appointment_id))


# ============================================================================
# AVAILABILITY
# ============================================================================


@router.get("/availability/doctors/{doctor_id}", response_model=DoctorAvailability)
def get_doctor_availability(
    doctor_id: str,
    date: date = Query(..., description="Day to check (YYYY-MM-DD)"),
    service: SchedulingService = Depends(get_scheduling_service),
):
    slots = service.get_doctor_availability(doctor_id, date)
    return DoctorAvailability(doctorId=doctor_id, date=date, availableSlots=slots)


@router.get("/availability/branches/{branch_id}", response_model=BranchAvailability)
def get_branch_availability(
    branch_id: str,
    date: date = Query(..., description="Day to check (YYYY-MM-DD)"),
    service: SchedulingService = Depends(get_scheduling_service),
):
    doctors = service.get_branch_availability(branch_id, date)
    return BranchAvailability(branchId=branch_id, date=date, doctors=doctors)


# ============================================================================
# SCHEDULES
# ============================================================================


@router.get("/doctors/{doctor_id}/schedule", response_model=list[AppointmentResponse])
def get_doctor_schedule(
    doctor_id: str,
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    service: SchedulingService = Depends(get_scheduling_service),
):
    appointments = service.get_doctor_schedule(doctor_id, start_date, end_date)
    return [AppointmentResponse.model_validate(a) for a in appointments]


@router.get("/patients/{patient_id}/schedule", response_model=list[AppointmentResponse])
def get_patient_schedule(
    patient_id: str,
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    service: SchedulingService = Depends(get_scheduling_service),
):
    appointments = service.get_patient_schedule(patient_id, start_date, end_date)
    return [AppointmentResponse.model_validate(a) for a in appointments]


@router.get("/{appointment_id}", response_model=AppointmentResponse)
def get_appointment(
    appointment_id: str,
    service: SchedulingService = Depends(get_scheduling_service),
):
    return AppointmentResponse.model_validate(service.get_appointment(appointment_id))
