from __future__ import annotations

import datetime
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select, update

from .availability import AvailabilitySnapshot, load_availability
from .database import (
    Employee,
    ScheduledShift,
    ShiftTemplate,
    WeekSchedule,
    find_week,
    format_week_label,
    get_employee,
    get_or_create_week,
    list_employees,
    record_audit_log,
    week_bounds,
)
from .errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from .labor import week_totals
from .time_source import (
    ActualOverride,
    CustomSource,
    ShiftTimeSource,
    TemplateSource,
    describe_source,
    parse_time_value,
    resolve_time_source,
    source_minutes,
    span_for,
    validate_time_fields,
)


logger = logging.getLogger(__name__)

MAX_TEMPLATE_MINUTES = 24 * 60


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _time_label(value: Optional[datetime.time]) -> Optional[str]:
    return value.strftime("%H:%M") if value is not None else None


def _iso(value: Optional[datetime.datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def shift_to_dict(shift: ScheduledShift, template: Optional[ShiftTemplate] = None, employee: Optional[Employee] = None) -> Dict[str, Any]:
    source = resolve_time_source(shift, template)
    start, end = span_for(source, shift.shift_date)
    template = template or (shift.template if shift.shift_template_id is not None else None)
    payload = {
        "id": shift.id,
        "week_id": shift.week_id,
        "user_uid": shift.user_uid,
        "employee_name": employee.full_name if employee else None,
        "shift_date": shift.shift_date.isoformat(),
        "shift_template_id": shift.shift_template_id,
        "template_name": template.name if template else None,
        "custom_start_time": _time_label(shift.custom_start_time),
        "custom_end_time": _time_label(shift.custom_end_time),
        "actual_start_time": _time_label(shift.actual_start_time),
        "actual_end_time": _time_label(shift.actual_end_time),
        "start": start.isoformat(),
        "end": end.isoformat(),
        "duration_minutes": source_minutes(source),
        "notes": shift.notes or "",
        "status": shift.status,
        "created_by": shift.created_by,
        "published_at": _iso(shift.published_at),
        "published_by": shift.published_by,
    }
    payload.update(describe_source(source))
    return payload


def template_to_dict(template: ShiftTemplate) -> Dict[str, Any]:
    return {
        "id": template.id,
        "name": template.name,
        "start_time": _time_label(template.start_time),
        "end_time": _time_label(template.end_time),
        "duration_minutes": template.duration_minutes,
        "break_duration_minutes": template.break_duration_minutes,
        "position_required": template.position_required,
        "max_employees": template.max_employees,
    }


def week_to_dict(week: Optional[WeekSchedule], week_start: datetime.date) -> Dict[str, Any]:
    start, end = week_bounds(week_start)
    if week is None:
        return {
            "week_start": start.isoformat(),
            "week_end": end.isoformat(),
            "label": format_week_label(start),
            "status": "empty",
            "published_at": None,
            "published_by": None,
        }
    return {
        "week_start": week.week_start_date.isoformat(),
        "week_end": end.isoformat(),
        "label": week.label,
        "status": week.status,
        "published_at": _iso(week.published_at),
        "published_by": week.published_by,
    }


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def template_lookup(session) -> Dict[int, ShiftTemplate]:
    return {template.id: template for template in session.scalars(select(ShiftTemplate))}


def employee_lookup(session, only_active: bool = False) -> Dict[str, Employee]:
    return {employee.uid: employee for employee in list_employees(session, only_active=only_active)}


def query_shifts(
    session,
    start_date: datetime.date,
    end_date: datetime.date,
    *,
    user_uid: Optional[str] = None,
    status: Optional[str] = None,
) -> List[ScheduledShift]:
    stmt = select(ScheduledShift).where(
        ScheduledShift.shift_date >= start_date,
        ScheduledShift.shift_date <= end_date,
    )
    if user_uid:
        stmt = stmt.where(ScheduledShift.user_uid == user_uid)
    if status:
        stmt = stmt.where(ScheduledShift.status == status)
    stmt = stmt.order_by(ScheduledShift.shift_date, ScheduledShift.id)
    return list(session.scalars(stmt))


def week_shifts(session, week: WeekSchedule) -> List[ScheduledShift]:
    stmt = select(ScheduledShift).where(ScheduledShift.week_id == week.id).order_by(ScheduledShift.shift_date, ScheduledShift.id)
    return list(session.scalars(stmt))


def _resolve_range(start_date: datetime.date, end_date: Optional[datetime.date]):
    if end_date is None:
        return week_bounds(start_date)
    if end_date < start_date:
        raise ValidationError("end_date must not be before start_date.", field="end_date")
    return start_date, end_date


def list_week(
    session,
    start_date: datetime.date,
    end_date: Optional[datetime.date] = None,
    *,
    user_uid: Optional[str] = None,
    status: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Shifts in the range ordered by date then start time.

    Without ``end_date`` the whole Monday-start week containing ``start_date``
    is returned.
    """
    start, end = _resolve_range(start_date, end_date)
    templates = template_lookup(session)
    employees = employee_lookup(session)
    rows = []
    for shift in query_shifts(session, start, end, user_uid=user_uid, status=status):
        template = templates.get(shift.shift_template_id) if shift.shift_template_id is not None else None
        rows.append(shift_to_dict(shift, template, employees.get(shift.user_uid)))
    rows.sort(key=lambda row: (row["shift_date"], row["start"], row["id"]))
    return rows


def week_view(session, week_start: datetime.date) -> Dict[str, Any]:
    """List-week response: the week's state, its shifts and labor totals."""
    start, end = week_bounds(week_start)
    shifts = query_shifts(session, start, end)
    templates = template_lookup(session)
    employees = employee_lookup(session)
    payload = week_to_dict(find_week(session, start), start)
    payload["shifts"] = list_week(session, start, end)
    if not shifts:
        payload["status"] = "empty"
    payload["week_totals"] = week_totals(shifts, employees, templates).to_dict()
    return payload


def week_stats(session, start_date: datetime.date, end_date: Optional[datetime.date] = None) -> Dict[str, Any]:
    start, end = _resolve_range(start_date, end_date)
    shifts = query_shifts(session, start, end)
    published = sum(1 for shift in shifts if shift.status == "published")
    custom = sum(1 for shift in shifts if shift.custom_start_time is not None)
    return {
        "start_date": start.isoformat(),
        "end_date": end.isoformat(),
        "total_shifts": len(shifts),
        "employees_scheduled": len({shift.user_uid for shift in shifts}),
        "published_shifts": published,
        "unpublished_shifts": len(shifts) - published,
        "custom_shifts": custom,
        "template_shifts": sum(1 for shift in shifts if shift.shift_template_id is not None),
    }


def personal_schedule(
    session,
    user_uid: str,
    start_date: datetime.date,
    end_date: Optional[datetime.date] = None,
) -> List[Dict[str, Any]]:
    """Staff-visible view: published shifts only."""
    return list_week(session, start_date, end_date, user_uid=user_uid, status="published")


def availability_grid(session, week_start: datetime.date, snapshot: Optional[AvailabilitySnapshot] = None) -> Dict[str, Any]:
    start, end = week_bounds(week_start)
    snapshot = snapshot or load_availability(session, start, end)
    dates = [start + datetime.timedelta(days=offset) for offset in range(7)]
    employees = list_employees(session, only_active=True)
    rows = []
    for employee in employees:
        days = {}
        for date_ in dates:
            reason = snapshot.conflict_reason(employee.uid, date_)
            days[date_.isoformat()] = {"unavailable": reason is not None, "reason": reason}
        rows.append({"user_uid": employee.uid, "full_name": employee.full_name, "position": employee.position, "days": days})
    return {
        "week_start": start.isoformat(),
        "dates": [date_.isoformat() for date_ in dates],
        "register_unreachable": snapshot.unreachable,
        "employees": rows,
    }


# ---------------------------------------------------------------------------
# Staged writes (no commit; callers own the transaction)
# ---------------------------------------------------------------------------


def reopen_week_rows(session, week: WeekSchedule, *, actor: str, reason: str) -> int:
    """Flip a published week and its shifts back to draft inside the caller's transaction."""
    result = session.execute(
        update(ScheduledShift)
        .where(ScheduledShift.week_id == week.id)
        .values(status="draft", published_at=None, published_by=None)
        .execution_options(synchronize_session="fetch")
    )
    previous = week.status
    week.status = "draft"
    week.published_at = None
    week.published_by = None
    record_audit_log(
        session,
        actor,
        "ROTA_REOPEN",
        "WeekSchedule",
        week.id,
        {"week_start": week.week_start_date.isoformat(), "reason": reason, "previous_status": previous},
        commit=False,
    )
    return result.rowcount or 0


def ensure_editable(session, week: WeekSchedule, *, actor: str, reopen: bool, reason: str) -> bool:
    """Guard edits to a published week; returns True when the week was reopened."""
    if week.status != "published":
        return False
    if not reopen:
        raise InvalidStateError(
            f"Week {week.label} is published; reopen it before editing.",
            week_start=week.week_start_date.isoformat(),
        )
    reopen_week_rows(session, week, actor=actor, reason=reason)
    return True


def stage_shift(
    session,
    week: WeekSchedule,
    user_uid: str,
    shift_date: datetime.date,
    source: ShiftTimeSource,
    *,
    actor: str,
    snapshot: AvailabilitySnapshot,
    notes: str = "",
    override: bool = False,
) -> ScheduledShift:
    """Insert a draft shift after re-checking availability; flushes, never commits."""
    if not override and snapshot.is_unavailable(user_uid, shift_date):
        raise ConflictError(
            f"{user_uid} is unavailable on {shift_date.isoformat()}.",
            conflicts=[snapshot.conflict_detail(user_uid, shift_date)],
            user_uid=user_uid,
            date=shift_date.isoformat(),
        )
    shift = ScheduledShift(
        week_id=week.id,
        user_uid=user_uid,
        shift_date=shift_date,
        notes=notes or "",
        status="draft",
        created_by=actor or "system",
    )
    if isinstance(source, TemplateSource):
        shift.shift_template_id = source.template_id
    elif isinstance(source, CustomSource):
        shift.custom_start_time = source.start
        shift.custom_end_time = source.end
    else:
        raise ValidationError("Shifts are created from a template or custom times.", field="time_source")
    session.add(shift)
    session.flush()
    return shift


def _require_template(session, template_id: int) -> ShiftTemplate:
    template = session.get(ShiftTemplate, template_id)
    if template is None:
        raise NotFoundError("shift_template", template_id)
    return template


def prepare_source(session, source: ShiftTimeSource) -> ShiftTimeSource:
    """Validate a requested source and fill template times from the catalog."""
    if isinstance(source, TemplateSource):
        return TemplateSource.from_template(_require_template(session, source.template_id))
    if isinstance(source, CustomSource):
        validate_time_fields(None, source.start, source.end)
        return source
    if isinstance(source, ActualOverride):
        raise ValidationError("Actual times are recorded on an existing shift, not at assignment.", field="time_source")
    raise ValidationError("Unknown shift time source.", field="time_source")


# ---------------------------------------------------------------------------
# Manual edits
# ---------------------------------------------------------------------------


def assign(
    session,
    user_uid: str,
    shift_date: datetime.date,
    time_source: ShiftTimeSource,
    *,
    actor: str,
    override: bool = False,
    override_note: Optional[str] = None,
    reopen: bool = False,
    notes: Optional[str] = None,
    snapshot: Optional[AvailabilitySnapshot] = None,
) -> ScheduledShift:
    if not isinstance(shift_date, datetime.date) or isinstance(shift_date, datetime.datetime):
        raise ValidationError("shift_date must be a calendar date.", field="shift_date")
    employee = get_employee(session, user_uid)
    if employee is None or employee.status != "active":
        raise NotFoundError("employee", user_uid, f"Active employee {user_uid} was not found.")
    source = prepare_source(session, time_source)
    override_note = (override_note or "").strip()
    if override and not override_note:
        raise ValidationError("A conflict override requires a note.", field="override_note")
    if snapshot is None or not snapshot.range_start <= shift_date <= snapshot.range_end:
        snapshot = load_availability(session, shift_date, shift_date)
    conflict = snapshot.is_unavailable(user_uid, shift_date)
    note_parts = [notes.strip()] if notes and notes.strip() else []
    if override and conflict:
        note_parts.append(f"Override: {override_note}")
    try:
        week = get_or_create_week(session, shift_date, for_update=True)
        reopened = ensure_editable(session, week, actor=actor, reopen=reopen, reason="manual_assign")
        shift = stage_shift(
            session,
            week,
            user_uid,
            shift_date,
            source,
            actor=actor,
            snapshot=snapshot,
            notes=" | ".join(note_parts),
            override=override,
        )
        payload: Dict[str, Any] = {
            "user_uid": user_uid,
            "shift_date": shift_date.isoformat(),
            "duration_minutes": source_minutes(source),
            "reopened": reopened,
        }
        payload.update(describe_source(source))
        if override and conflict:
            payload["override_note"] = override_note
            payload["conflicts"] = [snapshot.conflict_detail(user_uid, shift_date)]
        record_audit_log(session, actor, "ROTA_ASSIGN", "ScheduledShift", shift.id, payload, commit=False)
        session.commit()
    except Exception:
        session.rollback()
        raise
    if override and conflict:
        logger.info("Availability conflict overridden for %s on %s by %s", user_uid, shift_date, actor)
    session.refresh(shift)
    return shift


def _require_shift(session, shift_id: int) -> ScheduledShift:
    shift = session.get(ScheduledShift, shift_id)
    if shift is None:
        raise NotFoundError("shift", shift_id)
    return shift


def update_actual_times(
    session,
    shift_id: int,
    actual_start: Any,
    actual_end: Any,
    *,
    actor: str,
    reopen: bool = False,
) -> ScheduledShift:
    """Record the hours actually worked; passing two ``None`` values clears the override."""
    shift = _require_shift(session, shift_id)
    start = parse_time_value(actual_start, "actual_start_time")
    end = parse_time_value(actual_end, "actual_end_time")
    if (start is None) != (end is None):
        raise ValidationError("Actual start and end times must be provided together.", field="actual_start_time")
    if start is not None and start == end:
        raise ValidationError("Actual start and end times cannot be equal.", field="actual_end_time")
    try:
        week = session.scalars(
            select(WeekSchedule).where(WeekSchedule.id == shift.week_id).with_for_update()
        ).one()
        reopened = ensure_editable(session, week, actor=actor, reopen=reopen, reason="actual_times")
        previous = (_time_label(shift.actual_start_time), _time_label(shift.actual_end_time))
        shift.actual_start_time = start
        shift.actual_end_time = end
        record_audit_log(
            session,
            actor,
            "ROTA_ACTUAL",
            "ScheduledShift",
            shift.id,
            {
                "previous": list(previous),
                "actual_start_time": _time_label(start),
                "actual_end_time": _time_label(end),
                "reopened": reopened,
            },
            commit=False,
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(shift)
    return shift


def remove(session, shift_id: int, *, actor: str, reopen: bool = False) -> Dict[str, Any]:
    shift = _require_shift(session, shift_id)
    try:
        week = session.scalars(
            select(WeekSchedule).where(WeekSchedule.id == shift.week_id).with_for_update()
        ).one()
        reopened = ensure_editable(session, week, actor=actor, reopen=reopen, reason="manual_remove")
        payload = {
            "user_uid": shift.user_uid,
            "shift_date": shift.shift_date.isoformat(),
            "shift_template_id": shift.shift_template_id,
            "reopened": reopened,
        }
        session.delete(shift)
        record_audit_log(session, actor, "ROTA_REMOVE", "ScheduledShift", shift_id, payload, commit=False)
        session.commit()
    except Exception:
        session.rollback()
        raise
    return {"id": shift_id, "removed": True, "reopened": reopened}


# ---------------------------------------------------------------------------
# Template catalog
# ---------------------------------------------------------------------------


def list_templates(session) -> List[ShiftTemplate]:
    stmt = select(ShiftTemplate).order_by(ShiftTemplate.start_time, ShiftTemplate.name)
    return list(session.scalars(stmt))


def _coerce_int(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer.", field=field)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer.", field=field)


def _validate_template_fields(values: Dict[str, Any]) -> Dict[str, Any]:
    name = (values.get("name") or "").strip()
    if not name:
        raise ValidationError("Template name is required.", field="name")
    start_time = parse_time_value(values.get("start_time"), "start_time")
    if start_time is None:
        raise ValidationError("Template start_time is required.", field="start_time")
    duration = _coerce_int(values.get("duration_minutes"), "duration_minutes")
    if duration <= 0 or duration > MAX_TEMPLATE_MINUTES:
        raise ValidationError("duration_minutes must be between 1 and 1440.", field="duration_minutes")
    break_minutes = _coerce_int(values.get("break_duration_minutes", 30), "break_duration_minutes")
    if break_minutes < 0 or break_minutes >= duration:
        raise ValidationError("break_duration_minutes must be >= 0 and shorter than the shift.", field="break_duration_minutes")
    max_employees = _coerce_int(values.get("max_employees", 1), "max_employees")
    if max_employees < 1:
        raise ValidationError("max_employees must be at least 1.", field="max_employees")
    position = values.get("position_required")
    position = position.strip() if isinstance(position, str) and position.strip() else None
    return {
        "name": name,
        "start_time": start_time,
        "duration_minutes": duration,
        "break_duration_minutes": break_minutes,
        "position_required": position,
        "max_employees": max_employees,
    }


def _check_unique_name(session, name: str, exclude_id: Optional[int] = None) -> None:
    stmt = select(ShiftTemplate).where(func.lower(ShiftTemplate.name) == name.lower())
    if exclude_id is not None:
        stmt = stmt.where(ShiftTemplate.id != exclude_id)
    if session.scalars(stmt).first() is not None:
        raise ValidationError(f"A shift template named '{name}' already exists.", field="name")


def create_template(
    session,
    name: str,
    start_time: Any,
    duration_minutes: int,
    break_duration_minutes: int = 30,
    position_required: Optional[str] = None,
    max_employees: int = 1,
    *,
    actor: str = "system",
) -> ShiftTemplate:
    values = _validate_template_fields(
        {
            "name": name,
            "start_time": start_time,
            "duration_minutes": duration_minutes,
            "break_duration_minutes": break_duration_minutes,
            "position_required": position_required,
            "max_employees": max_employees,
        }
    )
    _check_unique_name(session, values["name"])
    template = ShiftTemplate(**values)
    try:
        session.add(template)
        session.flush()
        record_audit_log(session, actor, "TEMPLATE_CREATE", "ShiftTemplate", template.id, template_to_dict(template), commit=False)
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(template)
    return template


def update_template(session, template_id: int, changes: Dict[str, Any], *, actor: str = "system") -> ShiftTemplate:
    template = _require_template(session, template_id)
    current = template_to_dict(template)
    merged = {key: current[key] for key in ("name", "start_time", "duration_minutes", "break_duration_minutes", "position_required", "max_employees")}
    for key in merged:
        if key in changes:
            merged[key] = changes[key]
    values = _validate_template_fields(merged)
    _check_unique_name(session, values["name"], exclude_id=template.id)
    try:
        for key, value in values.items():
            setattr(template, key, value)
        record_audit_log(
            session,
            actor,
            "TEMPLATE_UPDATE",
            "ShiftTemplate",
            template.id,
            {"before": current, "changes": {key: changes[key] for key in changes if key in merged}},
            commit=False,
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(template)
    return template


def template_usage(session, template_id: int) -> Dict[str, Any]:
    """How many shifts a template deletion would take with it, grouped by week."""
    template = _require_template(session, template_id)
    stmt = (
        select(WeekSchedule, func.count(ScheduledShift.id))
        .join(ScheduledShift, ScheduledShift.week_id == WeekSchedule.id)
        .where(ScheduledShift.shift_template_id == template_id)
        .group_by(WeekSchedule.id)
        .order_by(WeekSchedule.week_start_date)
    )
    weeks = []
    total = 0
    for week, count in session.execute(stmt):
        total += count
        weeks.append(
            {
                "week_start": week.week_start_date.isoformat(),
                "label": week.label,
                "status": week.status,
                "shift_count": count,
            }
        )
    return {
        "template_id": template.id,
        "name": template.name,
        "shift_count": total,
        "weeks": weeks,
        "published_weeks": sum(1 for week in weeks if week["status"] == "published"),
    }


def delete_template(session, template_id: int, *, actor: str = "system") -> Dict[str, Any]:
    """Delete a template and every shift built from it in one transaction."""
    usage = template_usage(session, template_id)
    template = _require_template(session, template_id)
    reopened_weeks: List[str] = []
    try:
        affected = session.scalars(
            select(WeekSchedule)
            .where(WeekSchedule.id.in_(select(ScheduledShift.week_id).where(ScheduledShift.shift_template_id == template_id)))
            .with_for_update()
        ).all()
        for week in affected:
            if week.status == "published":
                reopen_week_rows(session, week, actor=actor, reason="template_deleted")
                reopened_weeks.append(week.week_start_date.isoformat())
        result = session.execute(
            delete(ScheduledShift)
            .where(ScheduledShift.shift_template_id == template_id)
            .execution_options(synchronize_session="fetch")
        )
        deleted_shifts = result.rowcount or 0
        session.delete(template)
        record_audit_log(
            session,
            actor,
            "TEMPLATE_DELETE",
            "ShiftTemplate",
            template_id,
            {"name": usage["name"], "deleted_shifts": deleted_shifts, "reopened_weeks": reopened_weeks},
            commit=False,
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    if deleted_shifts:
        logger.info("Template %s deleted with %s dependent shifts", template_id, deleted_shifts)
    return {"template_id": template_id, "deleted_shifts": deleted_shifts, "reopened_weeks": reopened_weeks}
