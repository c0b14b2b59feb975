"""
Shared pytest fixtures for the scheduling tests.

Services are built against the in-memory appointment store by default; the
sql_* fixtures provide SQLite-backed sessions for storage and race tests.
"""

import os
from datetime import date
from typing import Optional

import pytest

# Ensure test environment before the application modules read their config
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_ENABLED"] = "false"
os.environ["DB_LOG_SLOW_QUERIES"] = "false"

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from clinica.cache import AvailabilityCache  # noqa: E402
from clinica.config import SchedulingSettings  # noqa: E402
from clinica.database import Base, create_database_engine, get_db  # noqa: E402
from clinica.domain.scheduling.directory import SqlDoctorDirectory  # noqa: E402
from clinica.domain.scheduling.locks import SlotLockRegistry  # noqa: E402
from clinica.domain.scheduling.repository import (  # noqa: E402
    AppointmentRepository,
    InMemoryAppointmentStore,
)
from clinica.domain.scheduling.schemas import BranchSummary, DoctorSummary, OperatingHours  # noqa: E402
from clinica.domain.scheduling.service import SchedulingService  # noqa: E402
from clinica.main import app  # noqa: E402
from clinica.models import Branch, Doctor  # noqa: E402

DAY = date(2025, 3, 10)  # a Monday


class FakeClock:
    """Monotonic clock the tests move by hand"""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def notify_appointment_event(self, kind, appointment):
        self.events.append((kind, appointment.id))


class StaticDirectory:
    """Branches mapped to the ids of their active doctors"""

    def __init__(self, branches: Optional[dict] = None, hours: Optional[dict] = None):
        self.branches = branches or {}
        self.hours = hours or {}

    def list_doctors_for_branch(self, branch_id):
        return [DoctorSummary(id=d, name=f"Dr. {d}", branch_id=branch_id) for d in self.branches.get(branch_id, [])]

    def get_operating_hours(self, branch_id):
        return self.hours.get(branch_id)

    def get_doctor(self, doctor_id):
        for branch_id, doctors in self.branches.items():
            if doctor_id in doctors:
                return DoctorSummary(id=doctor_id, name=f"Dr. {doctor_id}", branch_id=branch_id)
        return None

    def get_branch(self, branch_id):
        if branch_id not in self.branches:
            return None
        return BranchSummary(id=branch_id, name=f"Branch {branch_id}", operating_hours=self.hours.get(branch_id))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock) -> AvailabilityCache:
    return AvailabilityCache(default_ttl=300, clock=clock)


@pytest.fixture
def store() -> InMemoryAppointmentStore:
    return InMemoryAppointmentStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def directory() -> StaticDirectory:
    return StaticDirectory(branches={"B1": ["D1", "D2"]})


@pytest.fixture
def service(store, cache, directory, notifier) -> SchedulingService:
    return SchedulingService(store=store, cache=cache, directory=directory, notifier=notifier)


# ============================================================================
# DATABASE FIXTURES
# ============================================================================


@pytest.fixture
def sql_engine(tmp_path):
    """File-backed SQLite so several threads can open their own connections"""
    engine = create_database_engine(f"sqlite:///{tmp_path / 'clinica-test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(sql_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=sql_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def seeded_branch(db_session):
    """Branch B1 (Monday 09:00-12:00) with two active doctors and one inactive"""
    hours = OperatingHours(monday={"open": "09:00", "close": "12:00"})
    db_session.add(Branch(id="B1", name="Central", operating_hours=hours))
    db_session.add_all(
        [
            Doctor(id="D1", branch_id="B1", first_name="Ana", last_name="Alvarez", specialization="Cardiology"),
            Doctor(id="D2", branch_id="B1", first_name="Ben", last_name="Brown"),
            Doctor(id="D3", branch_id="B1", first_name="Cy", last_name="Cole", status="inactive"),
        ]
    )
    db_session.commit()
    return "B1"


def build_sql_service(session, cache=None, locks=None, notifier=None) -> SchedulingService:
    return SchedulingService(
        store=AppointmentRepository(session),
        cache=cache or AvailabilityCache(),
        directory=SqlDoctorDirectory(session),
        notifier=notifier or RecordingNotifier(),
        locks=locks,
    )


@pytest.fixture
def api_client(session_factory, seeded_branch, clock):
    """TestClient wired to the seeded SQLite test database without running the lifespan"""

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.redis_client = None
    app.state.availability_cache = AvailabilityCache(clock=clock)
    app.state.notifier = RecordingNotifier()
    app.state.slot_locks = SlotLockRegistry()
    app.state.scheduling_settings = SchedulingSettings()

    yield TestClient(app)

    app.dependency_overrides.clear()
