from __future__ import annotations

import datetime
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select

from .availability import load_availability
from .database import (
    ScheduledShift,
    WeekSchedule,
    find_week,
    get_or_create_week,
    normalize_week_start,
    record_audit_log,
    week_bounds,
)
from .errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from .store import query_shifts, reopen_week_rows, stage_shift, week_shifts
from .time_source import CustomSource, TemplateSource


logger = logging.getLogger(__name__)


def _mark_published(shift: ScheduledShift, actor: str, now: datetime.datetime) -> None:
    shift.status = "published"
    shift.published_at = now
    shift.published_by = actor


def week_status(session, week_start: datetime.date) -> str:
    """``empty`` when the week holds no shifts, otherwise the stored state."""
    week = find_week(session, week_start)
    if week is None or not week_shifts(session, week):
        return "empty"
    return week.status


def publish_week(session, week_start: datetime.date, *, actor: str) -> Dict[str, Any]:
    """Commit every shift of the week to ``published`` or change nothing at all."""
    start, end = week_bounds(week_start)
    week = find_week(session, start)
    shifts = week_shifts(session, week) if week is not None else []
    if not shifts:
        raise InvalidStateError(f"There are no shifts to publish for the week of {start.isoformat()}.", week_start=start.isoformat())
    snapshot = load_availability(session, start, end)
    conflicts = [
        snapshot.conflict_detail(shift.user_uid, shift.shift_date, shift.id)
        for shift in shifts
        if snapshot.is_unavailable(shift.user_uid, shift.shift_date)
    ]
    if conflicts:
        raise ConflictError(
            f"{len(conflicts)} shift(s) conflict with approved time off; nothing was published.",
            conflicts=conflicts,
            week_start=start.isoformat(),
        )
    now = datetime.datetime.now(datetime.timezone.utc)
    try:
        week = session.scalars(select(WeekSchedule).where(WeekSchedule.id == week.id).with_for_update()).one()
        for shift in shifts:
            _mark_published(shift, actor, now)
        week.status = "published"
        week.published_at = now
        week.published_by = actor
        affected = sorted({shift.user_uid for shift in shifts})
        record_audit_log(
            session,
            actor,
            "ROTA_PUBLISH",
            "WeekSchedule",
            week.id,
            {"week_start": start.isoformat(), "published_shifts": len(shifts), "affected_employees": affected},
            commit=False,
        )
        session.commit()
    except Exception:
        session.rollback()
        logger.exception("Publishing week %s failed; all shifts left in draft", start)
        raise
    return {
        "week_start": start.isoformat(),
        "status": "published",
        "published_at": now.isoformat(),
        "published_by": actor,
        "published_shifts": len(shifts),
        "affected_employees": affected,
    }


def reopen_week(session, week_start: datetime.date, *, actor: str) -> Dict[str, Any]:
    """Return a published week to draft; a draft or missing week is left untouched."""
    start, _ = week_bounds(week_start)
    week = find_week(session, start)
    if week is None or week.status != "published":
        return {"week_start": start.isoformat(), "status": week_status(session, start), "reopened": False, "shifts": 0}
    try:
        week = session.scalars(select(WeekSchedule).where(WeekSchedule.id == week.id).with_for_update()).one()
        count = reopen_week_rows(session, week, actor=actor, reason="manual_reopen")
        session.commit()
    except Exception:
        session.rollback()
        raise
    return {"week_start": start.isoformat(), "status": "draft", "reopened": True, "shifts": count}


def _copy_source(shift: ScheduledShift):
    if shift.shift_template_id is not None:
        return TemplateSource(template_id=shift.shift_template_id)
    if shift.custom_start_time is not None and shift.custom_end_time is not None:
        return CustomSource(start=shift.custom_start_time, end=shift.custom_end_time)
    return None


def copy_previous_week(
    session,
    target_week_start: datetime.date,
    overwrite_conflicts: bool = False,
    *,
    actor: str,
    source_week_start: Optional[datetime.date] = None,
) -> Dict[str, Any]:
    """Re-date a source week's shifts into the target week as drafts.

    Actual-time overrides are not copied. Employees on approved time-off are
    skipped, and so are employees who already work the target date unless
    ``overwrite_conflicts`` replaces their existing shifts.
    """
    target_start, target_end = week_bounds(target_week_start)
    if source_week_start is None:
        source_start = target_start - datetime.timedelta(days=7)
    else:
        source_start = normalize_week_start(source_week_start)
    if source_start == target_start:
        raise ValidationError("Source and target weeks must differ.", field="source_week_start")
    source_end = source_start + datetime.timedelta(days=6)
    offset = target_start - source_start
    source_shifts = query_shifts(session, source_start, source_end)
    if not source_shifts:
        raise NotFoundError(
            "week",
            source_start.isoformat(),
            f"No shifts found in the week of {source_start.isoformat()} to copy.",
        )
    snapshot = load_availability(session, target_start, target_end)
    skipped: List[Dict[str, Any]] = []
    copied = 0
    overwritten = 0
    try:
        week = get_or_create_week(session, target_start, for_update=True)
        reopened = False
        if week.status == "published":
            reopen_week_rows(session, week, actor=actor, reason="copy_previous_week")
            reopened = True
        existing: Dict[Tuple[str, datetime.date], List[ScheduledShift]] = {}
        for shift in week_shifts(session, week):
            existing.setdefault((shift.user_uid, shift.shift_date), []).append(shift)
        for shift in source_shifts:
            new_date = shift.shift_date + offset
            detail = {"source_shift_id": shift.id, "user_uid": shift.user_uid, "date": new_date.isoformat()}
            if snapshot.is_unavailable(shift.user_uid, new_date):
                skipped.append(dict(detail, reason="unavailable"))
                continue
            source = _copy_source(shift)
            if source is None:
                skipped.append(dict(detail, reason="invalid_source"))
                continue
            clashes = existing.get((shift.user_uid, new_date))
            if clashes:
                if not overwrite_conflicts:
                    skipped.append(dict(detail, reason="existing_shift"))
                    continue
                for clash in clashes:
                    session.delete(clash)
                overwritten += len(clashes)
                existing.pop((shift.user_uid, new_date), None)
                session.flush()
            stage_shift(
                session,
                week,
                shift.user_uid,
                new_date,
                source,
                actor=actor,
                snapshot=snapshot,
                notes=shift.notes or "",
            )
            copied += 1
        record_audit_log(
            session,
            actor,
            "ROTA_COPY",
            "WeekSchedule",
            week.id,
            {
                "source_week_start": source_start.isoformat(),
                "target_week_start": target_start.isoformat(),
                "copied": copied,
                "skipped": len(skipped),
                "overwritten": overwritten,
                "reopened": reopened,
            },
            commit=False,
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    return {
        "source_week_start": source_start.isoformat(),
        "target_week_start": target_start.isoformat(),
        "copied": copied,
        "skipped": len(skipped),
        "skipped_shifts": skipped,
        "overwritten": overwritten,
        "reopened": reopened,
    }
