"""Scheduling error taxonomy; the HTTP layer maps each class to one status code"""

from typing import Optional


class SchedulingError(Exception):
    """Base class for errors raised by the scheduling domain"""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class SlotUnavailable(SchedulingError):
    """The requested interval overlaps an active booking of the same doctor"""

    status_code = 409

    def __init__(self, doctor_id: str, date, start_time: str, end_time: str):
        super().__init__(
            f"Doctor {doctor_id} is not available on {date} between {start_time} and {end_time}"
        )
        self.doctor_id = doctor_id
        self.date = date
        self.start_time = start_time
        self.end_time = end_time


class NotFound(SchedulingError):
    """A referenced appointment, doctor or branch does not exist or cannot be booked"""

    status_code = 404


class AppointmentNotFound(NotFound):
    def __init__(self, appointment_id: str):
        super().__init__(f"Appointment {appointment_id} not found")
        self.appointment_id = appointment_id


class DoctorNotFound(NotFound):
    def __init__(self, doctor_id: str, branch_id: Optional[str] = None):
        if branch_id is None:
            message = f"Doctor {doctor_id} not found or inactive"
        else:
            message = f"Doctor {doctor_id} does not work at branch {branch_id}"
        super().__init__(message)
        self.doctor_id = doctor_id
        self.branch_id = branch_id


class BranchNotFound(NotFound):
    def __init__(self, branch_id: str):
        super().__init__(f"Branch {branch_id} not found or inactive")
        self.branch_id = branch_id


class OutsideOpeningHours(SchedulingError):
    """The requested interval does not fit the business day or the branch's hours"""

    status_code = 400

    def __init__(self, branch_id: str, date, start_time: str, end_time: str):
        super().__init__(
            f"{start_time}-{end_time} on {date} is outside the opening hours of branch {branch_id}"
        )
        self.branch_id = branch_id
        self.date = date
        self.start_time = start_time
        self.end_time = end_time


class InvalidTransition(SchedulingError):
    """The appointment's current status does not allow the requested change"""

    status_code = 409

    def __init__(self, appointment_id: str, current_status: str, target_status: str):
        super().__init__(
            f"Appointment {appointment_id} cannot move from {current_status} to {target_status}"
        )
        self.appointment_id = appointment_id
        self.current_status = current_status
        self.target_status = target_status


class ConcurrentUpdate(SchedulingError):
    """Another writer changed the appointment between our read and our write"""

    status_code = 409

    def __init__(self, appointment_id: str):
        super().__init__(f"Appointment {appointment_id} was modified concurrently, retry the request")
        self.appointment_id = appointment_id


class StorageError(SchedulingError):
    """Underlying persistence failure; never retried by the scheduling domain"""

    status_code = 500
