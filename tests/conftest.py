"""
Pytest configuration and shared fixtures for tests
"""

from datetime import date, datetime
from zoneinfo import ZoneInfo

import pytest
from sqlmodel import Session, SQLModel, create_engine
from sqlalchemy.pool import StaticPool

from lessonbook import db_models  # noqa: F401  (registers tables on the metadata)
from lessonbook.schedule import BufferPolicy, Schedule, WorkingHoursConfig
from lessonbook.services.quota_ledger import QuotaLedger

BRISBANE = ZoneInfo("Australia/Brisbane")

# Monday; every test date lies in this week
MONDAY = date(2030, 3, 4)
SATURDAY = date(2030, 3, 9)
NOW = datetime(2030, 3, 1, 8, 0, tzinfo=BRISBANE)


def at(day: date, hhmm: str) -> datetime:
    """Aware datetime in the school's timezone"""
    hours, minutes = hhmm.split(":")
    return datetime(day.year, day.month, day.day, int(hours), int(minutes), tzinfo=BRISBANE)


@pytest.fixture(name="db_engine")
def db_engine_fixture():
    """Create in-memory SQLite database engine for testing"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,  # Keep single connection for in-memory DB
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture(name="db_session")
def db_session_fixture(db_engine):
    """Create database session for testing"""
    with Session(db_engine) as session:
        yield session
        session.rollback()  # Rollback any uncommitted changes after test


@pytest.fixture(name="working_hours")
def working_hours_fixture():
    """Mon-Fri 09:00-17:00, 60 minute lessons, 30 minute buffer"""
    return WorkingHoursConfig()


@pytest.fixture(name="schedule")
def schedule_fixture(working_hours):
    """Default schedule with an adaptive buffer policy"""
    return Schedule(working_hours=working_hours, buffer_policy=BufferPolicy())


@pytest.fixture(name="funded_user")
def funded_user_fixture(db_session):
    """User with 10 purchased lesson hours"""
    QuotaLedger(db_session).credit("user-1", 10, "10 hour package", package_id="pkg-10")
    return "user-1"
