"""Doctor/branch directory - read-only lookups the scheduler needs from the clinic registry"""

from typing import Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models import Branch, Doctor
from .errors import StorageError
from .schemas import BranchSummary, DoctorSummary, OperatingHours


class DoctorDirectory(Protocol):
    def list_doctors_for_branch(self, branch_id: str) -> list[DoctorSummary]: ...

    def get_operating_hours(self, branch_id: str) -> Optional[OperatingHours]: ...

    def get_doctor(self, doctor_id: str) -> Optional[DoctorSummary]: ...

    def get_branch(self, branch_id: str) -> Optional[BranchSummary]: ...


def _doctor_summary(doctor: Doctor) -> DoctorSummary:
    return DoctorSummary(
        id=doctor.id,
        name=doctor.full_name,
        specialization=doctor.specialization,
        branch_id=doctor.branch_id,
    )


class SqlDoctorDirectory:
    """Directory backed by the branches and doctors tables"""

    def __init__(self, db: Session):
        self.db = db

    def list_doctors_for_branch(self, branch_id: str) -> list[DoctorSummary]:
        """Active doctors currently assigned to the branch"""
        try:
            doctors = (
                self.db.query(Doctor)
                .filter(Doctor.branch_id == branch_id, Doctor.status == "active")
                .order_by(Doctor.last_name, Doctor.first_name)
                .all()
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Doctor directory lookup failed: {e}") from e

        return [_doctor_summary(d) for d in doctors]

    def get_operating_hours(self, branch_id: str) -> Optional[OperatingHours]:
        try:
            branch = self.db.query(Branch).filter(Branch.id == branch_id).first()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Branch lookup failed: {e}") from e
        return branch.operating_hours if branch else None

    def get_doctor(self, doctor_id: str) -> Optional[DoctorSummary]:
        """The doctor if it exists and is active, None otherwise"""
        try:
            doctor = (
                self.db.query(Doctor)
                .filter(Doctor.id == doctor_id, Doctor.status == "active")
                .first()
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Doctor lookup failed: {e}") from e
        return _doctor_summary(doctor) if doctor else None

    def get_branch(self, branch_id: str) -> Optional[BranchSummary]:
        """The branch if it exists and is active, None otherwise"""
        try:
            branch = (
                self.db.query(Branch)
                .filter(Branch.id == branch_id, Branch.status == "active")
                .first()
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Branch lookup failed: {e}") from e
        if branch is None:
            return None
        return BranchSummary(id=branch.id, name=branch.name, operating_hours=branch.operating_hours)
