from __future__ import annotations

import datetime
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import (
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker
from sqlalchemy.types import Time, TypeDecorator


DATA_DIR = Path(os.environ.get("ROTA_DATA_DIR") or Path(__file__).resolve().parent / "data")
DATABASE_URL = os.environ.get("ROTA_DATABASE_URL") or f"sqlite:///{(DATA_DIR / 'rota.db').as_posix()}"
WEEK_STATUS_CHOICES = {"draft", "published"}
SHIFT_STATUS_CHOICES = {"draft", "published"}
AVAILABILITY_STATUS_CHOICES = {"pending", "approved", "rejected"}


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def normalize_week_start(date_value: datetime.date) -> datetime.date:
    """Return the Monday for the provided date."""
    if isinstance(date_value, datetime.datetime):
        date_value = date_value.date()
    weekday = date_value.weekday()
    if weekday == 0:
        return date_value
    return date_value - datetime.timedelta(days=weekday)


def week_bounds(week_start: datetime.date) -> Tuple[datetime.date, datetime.date]:
    """Inclusive first and last calendar day of the Monday-start week."""
    start = normalize_week_start(week_start)
    return start, start + datetime.timedelta(days=6)


def format_week_label(week_start: datetime.date) -> str:
    iso_year, iso_week, _ = week_start.isocalendar()
    end = week_start + datetime.timedelta(days=6)
    start_str = week_start.strftime("%b %d")
    end_str = end.strftime("%b %d")
    if week_start.year != end.year:
        start_str = week_start.strftime("%b %d %Y")
        end_str = end.strftime("%b %d %Y")
    return f"{iso_year} W{iso_week:02d} ({start_str} - {end_str})"


def as_naive_utc(value: datetime.datetime) -> datetime.datetime:
    """Collapse aware timestamps onto the engine's single wall clock (UTC)."""
    if value.tzinfo is None:
        return value
    return value.astimezone(datetime.timezone.utc).replace(tzinfo=None)


class UTCDateTime(TypeDecorator):
    """DateTime that always stores UTC, whatever offset the caller supplied."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return as_naive_utc(value)


class Base(DeclarativeBase):
    """Metadata for every rota table; one engine keeps multi-row writes atomic."""

    pass


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uid: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    full_name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[str] = mapped_column(String(160), nullable=False, default="")
    position: Mapped[str] = mapped_column(String(80), nullable=False, default="Staff")
    pay_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(String(12), default="active", nullable=False)
    hire_date: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
    )


class AvailabilityRecord(Base):
    __tablename__ = "availability_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_uid: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    start_time: Mapped[datetime.datetime] = mapped_column(UTCDateTime(), nullable=False)
    end_time: Mapped[datetime.datetime] = mapped_column(UTCDateTime(), nullable=False)
    reason: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    request_type: Mapped[str] = mapped_column(String(24), nullable=False, default="time_off")
    status: Mapped[str] = mapped_column(String(12), nullable=False, default="pending")
    admin_notes: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    processed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class TimeEntry(Base):
    __tablename__ = "time_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_uid: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    clock_in_time: Mapped[datetime.datetime] = mapped_column(UTCDateTime(), nullable=False)
    clock_out_time: Mapped[datetime.datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    break_start_time: Mapped[datetime.datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    break_end_time: Mapped[datetime.datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    notes: Mapped[str] = mapped_column(String(255), nullable=False, default="")


class ShiftTemplate(Base):
    __tablename__ = "shift_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(80), nullable=False, unique=True)
    start_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    break_duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    position_required: Mapped[str | None] = mapped_column(String(80), nullable=True)
    max_employees: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    @property
    def end_time(self) -> datetime.time:
        anchor = datetime.datetime.combine(datetime.date(2000, 1, 1), self.start_time)
        return (anchor + datetime.timedelta(minutes=self.duration_minutes)).time()


class WeekSchedule(Base):
    __tablename__ = "week_schedule"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    week_start_date: Mapped[datetime.date] = mapped_column(Date, nullable=False, unique=True)
    iso_year: Mapped[int] = mapped_column(Integer, nullable=False)
    iso_week: Mapped[int] = mapped_column(Integer, nullable=False)
    label: Mapped[str] = mapped_column(String(48), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    published_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    published_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
    )

    projections: Mapped[List["DailySalesProjection"]] = relationship(
        back_populates="week",
        cascade="all, delete-orphan",
    )


class ScheduledShift(Base):
    __tablename__ = "rota_shifts"
    __table_args__ = {"sqlite_autoincrement": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    week_id: Mapped[int] = mapped_column(ForeignKey("week_schedule.id", ondelete="CASCADE"), nullable=False)
    user_uid: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    shift_date: Mapped[datetime.date] = mapped_column(Date, nullable=False, index=True)
    shift_template_id: Mapped[int | None] = mapped_column(
        ForeignKey("shift_templates.id", ondelete="CASCADE"), nullable=True
    )
    custom_start_time: Mapped[datetime.time | None] = mapped_column(Time, nullable=True)
    custom_end_time: Mapped[datetime.time | None] = mapped_column(Time, nullable=True)
    actual_start_time: Mapped[datetime.time | None] = mapped_column(Time, nullable=True)
    actual_end_time: Mapped[datetime.time | None] = mapped_column(Time, nullable=True)
    notes: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    created_by: Mapped[str] = mapped_column(String(64), nullable=False, default="system")
    published_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    published_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
    )

    week: Mapped[WeekSchedule] = relationship()
    template: Mapped[Optional[ShiftTemplate]] = relationship()


class EventDay(Base):
    __tablename__ = "event_days"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_date: Mapped[datetime.date] = mapped_column(Date, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    event_type: Mapped[str] = mapped_column(String(40), nullable=False, default="event")
    expected_impact: Mapped[str] = mapped_column(String(12), nullable=False, default="medium")
    sales_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=1.5)


class DailySalesProjection(Base):
    __tablename__ = "daily_sales_projections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    week_id: Mapped[int] = mapped_column(ForeignKey("week_schedule.id", ondelete="CASCADE"), nullable=False)
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    projected_sales_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    notes: Mapped[str] = mapped_column(String(200), nullable=False, default="")

    week: Mapped[WeekSchedule] = relationship(back_populates="projections")

    __table_args__ = (UniqueConstraint("week_id", "day_of_week", name="uq_daily_projection_week_day"),)


class RotaSettings(Base):
    __tablename__ = "rota_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    paramsJSON: Mapped[str] = mapped_column(String(8000), nullable=False, default="{}")
    lastEditedBy: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    lastEditedAt: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (UniqueConstraint("name", name="uq_rota_settings_name"),)

    def params_dict(self) -> Dict:
        try:
            value = json.loads(self.paramsJSON or "{}")
            if isinstance(value, dict):
                return value
        except json.JSONDecodeError:
            pass
        return {}


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(60), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False, default="ScheduledShift")
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payloadJSON: Mapped[str] = mapped_column(String(4000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


def _build_engine(url: str):
    if url.startswith("sqlite:///") and ":memory:" not in url:
        Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=False, future=True, connect_args=connect_args)


engine = _build_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False, future=True)


def init_database(bind=None) -> None:
    Base.metadata.create_all(bind or engine)


def get_or_create_week(session, week_start_date: datetime.date, *, for_update: bool = False) -> WeekSchedule:
    """Return the WeekSchedule row for the week containing ``week_start_date``.

    New rows are flushed, not committed, so the caller's transaction decides
    whether the week survives. ``for_update`` row-locks the week on databases
    that support it.
    """
    if not isinstance(week_start_date, (datetime.date, datetime.datetime)):
        raise TypeError("week_start_date must be a date or datetime instance.")
    normalized = normalize_week_start(week_start_date)
    stmt = select(WeekSchedule).where(WeekSchedule.week_start_date == normalized)
    if for_update:
        stmt = stmt.with_for_update()
    week = session.scalars(stmt).first()
    if week:
        return week
    iso_year, iso_week, _ = normalized.isocalendar()
    week = WeekSchedule(
        week_start_date=normalized,
        iso_year=iso_year,
        iso_week=iso_week,
        label=format_week_label(normalized),
        status="draft",
    )
    session.add(week)
    session.flush()
    return week


def find_week(session, week_start_date: datetime.date) -> Optional[WeekSchedule]:
    normalized = normalize_week_start(week_start_date)
    return session.scalars(select(WeekSchedule).where(WeekSchedule.week_start_date == normalized)).first()


def list_employees(session, only_active: bool = True) -> List[Employee]:
    stmt = select(Employee)
    if only_active:
        stmt = stmt.where(Employee.status == "active")
    stmt = stmt.order_by(Employee.uid.asc())
    return list(session.scalars(stmt))


def get_employee(session, user_uid: str) -> Optional[Employee]:
    return session.scalars(select(Employee).where(Employee.uid == user_uid)).first()


def list_approved(session, week_start: datetime.date, week_end: datetime.date) -> List[AvailabilityRecord]:
    """Approved time-off overlapping the inclusive calendar range."""
    range_start = datetime.datetime.combine(week_start, datetime.time.min)
    range_end = datetime.datetime.combine(week_end + datetime.timedelta(days=1), datetime.time.min)
    stmt = (
        select(AvailabilityRecord)
        .where(AvailabilityRecord.status == "approved")
        .where(AvailabilityRecord.start_time < range_end)
        .where(AvailabilityRecord.end_time > range_start)
        .order_by(AvailabilityRecord.user_uid, AvailabilityRecord.start_time)
    )
    return list(session.scalars(stmt))


def list_events(session, week_start: datetime.date, week_end: datetime.date) -> List[EventDay]:
    stmt = (
        select(EventDay)
        .where(EventDay.event_date >= week_start, EventDay.event_date <= week_end)
        .order_by(EventDay.event_date, EventDay.id)
    )
    return list(session.scalars(stmt))


def get_week_daily_projections(session, week_start_date: datetime.date) -> Dict[int, float]:
    week = find_week(session, week_start_date)
    if not week:
        return {}
    return {
        projection.day_of_week: float(projection.projected_sales_amount or 0.0)
        for projection in week.projections
    }


def save_week_daily_projection_values(session, week_start_date: datetime.date, values: Dict[int, Dict[str, Any]]) -> int:
    week = get_or_create_week(session, week_start_date)
    existing = {projection.day_of_week: projection for projection in week.projections}
    count = 0
    for day_index, payload in values.items():
        if not 0 <= int(day_index) <= 6:
            continue
        record = existing.get(int(day_index))
        if record is None:
            record = DailySalesProjection(week_id=week.id, day_of_week=int(day_index))
            session.add(record)
            week.projections.append(record)
        record.projected_sales_amount = max(0.0, float(payload.get("projected_sales_amount") or 0.0))
        record.notes = payload.get("notes") or ""
        count += 1
    session.commit()
    return count


def record_audit_log(
    session,
    user_id: str,
    action: str,
    target_type: str = "ScheduledShift",
    target_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
    *,
    commit: bool = True,
) -> AuditLog:
    log = AuditLog(
        user_id=user_id or "system",
        action=action,
        target_type=target_type,
        target_id=target_id,
        payloadJSON=json.dumps(payload or {}, default=str),
    )
    session.add(log)
    if commit:
        session.commit()
    return log


def get_active_settings(session) -> Optional[RotaSettings]:
    stmt = select(RotaSettings).order_by(RotaSettings.lastEditedAt.desc(), RotaSettings.id.desc())
    return session.scalars(stmt).first()


def upsert_settings(session, name: str, params_dict: Dict, *, edited_by: str = "system") -> RotaSettings:
    existing: Optional[RotaSettings] = session.execute(
        select(RotaSettings).where(RotaSettings.name == name)
    ).scalars().first()
    payload = params_dict if isinstance(params_dict, dict) else {}
    if existing:
        existing.paramsJSON = json.dumps(payload)
        existing.lastEditedBy = edited_by
        existing.lastEditedAt = _utcnow()
        session.commit()
        session.refresh(existing)
        return existing
    settings = RotaSettings(
        name=name,
        paramsJSON=json.dumps(payload),
        lastEditedBy=edited_by,
        lastEditedAt=_utcnow(),
    )
    session.add(settings)
    session.commit()
    session.refresh(settings)
    return settings
