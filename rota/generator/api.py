from __future__ import annotations

import datetime
import logging
from typing import Any, Dict, Optional

from sqlalchemy import delete

from ..availability import AvailabilitySnapshot, load_availability
from ..database import (
    ScheduledShift,
    get_or_create_week,
    get_week_daily_projections,
    list_employees,
    list_events,
    record_audit_log,
    week_bounds,
)
from ..errors import ValidationError
from ..settings import deep_update, load_active_settings, smart_assign_settings
from ..store import list_templates, reopen_week_rows, stage_shift
from ..time_source import TemplateSource
from .engine import Proposal, propose_week


logger = logging.getLogger(__name__)

OVERRIDE_KEYS = ("max_labor_cost_percentage", "priority_factors", "consider_events")


def build_week_proposal(
    session,
    week_start_date: datetime.date,
    *,
    overrides: Optional[Dict[str, Any]] = None,
    availability: Optional[AvailabilitySnapshot] = None,
) -> Proposal:
    """Read every input once and run the engine; nothing is written."""
    week_start, week_end = week_bounds(week_start_date)
    options = smart_assign_settings(load_active_settings(session))
    if overrides:
        options = deep_update(options, {key: overrides[key] for key in OVERRIDE_KEYS if overrides.get(key) is not None})
    templates = list_templates(session)
    if not templates:
        raise ValidationError("No shift templates available; create one before running smart assign.", field="shift_templates")
    employees = list_employees(session, only_active=True)
    # Overnight slots reach into the following Monday.
    if availability is None:
        availability = load_availability(session, week_start, week_end + datetime.timedelta(days=1))
    consider_events = bool(options.get("consider_events"))
    events = list_events(session, week_start, week_end) if consider_events else []
    return propose_week(
        week_start,
        employees,
        templates,
        availability,
        options.get("max_labor_cost_percentage"),
        options.get("priority_factors"),
        events,
        consider_events=consider_events,
        projected_sales=get_week_daily_projections(session, week_start),
        options=options,
    )


def smart_assign_week(
    session,
    week_start_date: datetime.date,
    *,
    actor: str,
    overrides: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Replace the week's shifts with a fresh proposal inside one transaction."""
    if week_start_date is None:
        raise ValidationError("week_start is required.", field="week_start")
    week_start, week_end = week_bounds(week_start_date)
    availability = load_availability(session, week_start, week_end + datetime.timedelta(days=1))
    proposal = build_week_proposal(session, week_start, overrides=overrides, availability=availability)
    try:
        week = get_or_create_week(session, week_start, for_update=True)
        reopened = False
        if week.status == "published":
            reopen_week_rows(session, week, actor=actor, reason="smart_assign")
            reopened = True
        result = session.execute(
            delete(ScheduledShift)
            .where(ScheduledShift.week_id == week.id)
            .execution_options(synchronize_session="fetch")
        )
        deleted = result.rowcount or 0
        created_ids = []
        for pick in proposal.shifts:
            shift = stage_shift(
                session,
                week,
                pick.user_uid,
                pick.date,
                TemplateSource(template_id=pick.template_id),
                actor=actor,
                snapshot=availability,
                notes=pick.notes,
            )
            created_ids.append(shift.id)
        record_audit_log(
            session,
            actor,
            "ROTA_SMART_ASSIGN",
            "WeekSchedule",
            week.id,
            {
                "week_start": week_start.isoformat(),
                "assigned_shifts": proposal.assigned_shifts,
                "deleted_shifts": deleted,
                "unassigned_slots": len(proposal.unassigned_slots),
                "labor_cost": proposal.labor_cost,
                "cost_cap_amount": proposal.cost_cap_amount,
                "reopened": reopened,
            },
            commit=False,
        )
        session.commit()
    except Exception:
        session.rollback()
        logger.exception("Smart assign for week %s rolled back", week_start)
        raise
    summary = proposal.to_dict()
    summary["shifts_created"] = len(created_ids)
    summary["shift_ids"] = created_ids
    summary["deleted_shifts"] = deleted
    summary["reopened"] = reopened
    if proposal.cap_warning is not None:
        logger.warning(
            "Labor cost cap reached for week %s; %s slot(s) unassigned",
            week_start,
            proposal.cap_warning.unassigned_slots,
        )
        summary["warnings"] = [proposal.cap_warning.message] + summary["warnings"]
    return summary
