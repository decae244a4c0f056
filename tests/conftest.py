"""
Pytest Configuration and Shared Fixtures
========================================

This module provides shared fixtures for all DoseSync tests.
Fixtures include database sessions, a controllable clock, the in-memory
notification gateway, a wired reconciliation coordinator and the test client.
"""

import os
import sys
from datetime import datetime, date, timedelta
from typing import Generator, Dict, Any, Callable

# Tests never touch a real database file or scheduler
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("NOTIFICATION_BACKEND", "memory")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import Base, get_db
from models import Medication, MedicationStatus, ReminderOccurrence, OccurrenceState
from api.deps import get_coordinator
from services.adherence_service import AdherenceStore
from services.medication_service import MedicationService
from services.reconciliation_service import ReconciliationCoordinator
from tools.notification_gateway import InMemoryNotificationGateway
from tools.schedule_descriptor import FrequencyKind
from app import app


# Wall clock used by every time-dependent fixture: Wednesday 2024-01-10, midnight
START_OF_TEST_DAY = datetime(2024, 1, 10, 0, 0)


class FixedClock:
    """Callable clock that only moves when told to"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return self.now


# ==================== DATABASE FIXTURES ====================

@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    # Enable foreign keys for SQLite
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    # Create all tables
    Base.metadata.create_all(bind=engine)

    yield engine

    # Cleanup
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    """Session factory bound to the test engine"""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_engine
    )


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a test database session"""
    session = session_factory()

    try:
        yield session
    finally:
        session.rollback()
        session.close()


# ==================== ENGINE FIXTURES ====================

@pytest.fixture
def clock() -> FixedClock:
    """Controllable wall clock"""
    return FixedClock(START_OF_TEST_DAY)


@pytest.fixture
def gateway(clock) -> InMemoryNotificationGateway:
    """In-memory notification scheduler sharing the test clock"""
    return InMemoryNotificationGateway(clock=clock)


@pytest.fixture
def store() -> AdherenceStore:
    """Adherence store instance"""
    return AdherenceStore()


@pytest.fixture
def coordinator(store, gateway, clock) -> ReconciliationCoordinator:
    """Coordinator wired to the in-memory gateway and test clock"""
    return ReconciliationCoordinator(
        store=store,
        gateway=gateway,
        horizon_days=30,
        clock=clock
    )


@pytest.fixture
def medication_service(coordinator) -> MedicationService:
    """Medication service bound to the test coordinator"""
    return MedicationService(coordinator)


@pytest.fixture(scope="function")
def client(db_session: Session, coordinator) -> Generator[TestClient, None, None]:
    """Create a FastAPI test client with database and coordinator overrides"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_coordinator] = lambda: coordinator

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


# ==================== SAMPLE DATA FIXTURES ====================

@pytest.fixture
def sample_medication_data() -> Dict[str, Any]:
    """Twice-daily medication starting on the test day"""
    return {
        "patient_id": 1,
        "name": "Metformin",
        "dosage": "500mg",
        "instructions": "Take with meals",
        "frequency": FrequencyKind.TWICE_DAILY,
        "times": ["08:00", "20:00"],
        "start_date": START_OF_TEST_DAY.date(),
        "end_date": None,
        "days_of_week": [],
        "custom_rule": None,
        "status": MedicationStatus.ACTIVE,
        "reminder_enabled": True
    }


@pytest.fixture
def make_medication(db_session: Session, sample_medication_data: Dict) -> Callable[..., Medication]:
    """Factory inserting a medication row (no reconciliation)"""

    def _make(**overrides) -> Medication:
        data = {**sample_medication_data, **overrides}
        medication = Medication(**data)
        db_session.add(medication)
        db_session.commit()
        db_session.refresh(medication)
        return medication

    return _make


@pytest.fixture
def test_medication(make_medication) -> Medication:
    """Create and return a test medication"""
    return make_medication()


@pytest.fixture
def add_occurrence(db_session: Session) -> Callable[..., ReminderOccurrence]:
    """Factory inserting an occurrence row directly"""

    def _add(medication_id: int, occurrence_date: date, occurrence_time: str,
             state: OccurrenceState = OccurrenceState.PENDING, handle: str = None) -> ReminderOccurrence:
        occurrence = ReminderOccurrence(
            medication_id=medication_id,
            occurrence_date=occurrence_date,
            occurrence_time=occurrence_time,
            state=state,
            notification_handle=handle
        )
        db_session.add(occurrence)
        db_session.commit()
        db_session.refresh(occurrence)
        return occurrence

    return _add


# ==================== MARKERS ====================

def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "api: mark test as an API test")
    config.addinivalue_line("markers", "database: mark test as requiring database")
