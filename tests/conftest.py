from __future__ import annotations

import datetime
import os

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Keep the module-level engine off disk before anything imports rota.database.
os.environ.setdefault("ROTA_DATABASE_URL", "sqlite:///:memory:")

from rota.database import AvailabilityRecord, Base, Employee, ShiftTemplate  # noqa: E402
from rota.settings import ensure_default_settings  # noqa: E402


WEEK_START = datetime.date(2024, 4, 1)


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    ensure_default_settings(factory)
    try:
        yield factory
    finally:
        engine.dispose()


@pytest.fixture()
def session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


def add_employee(session, uid: str, pay_rate=15.0, position: str = "Server", hire_date=None, status: str = "active") -> Employee:
    employee = Employee(
        uid=uid,
        full_name=uid.replace("-", " ").title(),
        email=f"{uid}@example.com",
        position=position,
        pay_rate=pay_rate,
        status=status,
        hire_date=hire_date or datetime.date(2023, 1, 1),
    )
    session.add(employee)
    session.commit()
    return employee


def add_template(
    session,
    name: str,
    start: datetime.time,
    duration_minutes: int,
    max_employees: int = 1,
    position_required=None,
) -> ShiftTemplate:
    template = ShiftTemplate(
        name=name,
        start_time=start,
        duration_minutes=duration_minutes,
        break_duration_minutes=30,
        position_required=position_required,
        max_employees=max_employees,
    )
    session.add(template)
    session.commit()
    return template


def add_time_off(session, uid: str, start: datetime.datetime, end: datetime.datetime, status: str = "approved", reason: str = "Holiday") -> AvailabilityRecord:
    record = AvailabilityRecord(user_uid=uid, start_time=start, end_time=end, status=status, reason=reason)
    session.add(record)
    session.commit()
    return record
