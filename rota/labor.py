from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy import select

from .database import TimeEntry, as_naive_utc
from .time_source import resolve_time_source, source_minutes


CENT = Decimal("0.01")


def round_money(value: float) -> float:
    return float(Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP))


def _hours(minutes: float) -> float:
    return round(minutes / 60.0, 2)


def hourly_rate(value: Any) -> Optional[float]:
    """Return a usable hourly rate, or None when missing, zero, negative or non-numeric."""
    if value is None or isinstance(value, bool):
        return None
    try:
        rate = float(value)
    except (TypeError, ValueError):
        return None
    if rate != rate or rate <= 0:
        return None
    return rate


def shift_duration(shift, template=None) -> int:
    """Minutes worked for ``shift``; custom, then actual, then template times."""
    return source_minutes(resolve_time_source(shift, template))


def shift_cost(shift, rate: Any, template=None) -> float:
    usable = hourly_rate(rate)
    if usable is None:
        return 0.0
    return round_money(shift_duration(shift, template) / 60.0 * usable)


def labor_percentage(cost: float, sales: float) -> float:
    try:
        sales_value = float(sales)
    except (TypeError, ValueError):
        return 0.0
    if sales_value <= 0:
        return 0.0
    return round(max(0.0, float(cost)) / sales_value * 100.0, 2)


@dataclass
class WeekTotals:
    per_employee: Dict[str, Dict[str, float]] = field(default_factory=dict)
    total_hours: float = 0.0
    total_cost: float = 0.0
    incomplete_rates: List[str] = field(default_factory=list)
    unknown_employees: List[str] = field(default_factory=list)

    @property
    def estimate_incomplete(self) -> bool:
        return bool(self.incomplete_rates or self.unknown_employees)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "per_employee": {uid: dict(values) for uid, values in self.per_employee.items()},
            "total_hours": self.total_hours,
            "total_cost": self.total_cost,
            "incomplete_rates": list(self.incomplete_rates),
            "unknown_employees": list(self.unknown_employees),
            "estimate_incomplete": self.estimate_incomplete,
        }


def _index(items, key: str) -> Dict[Any, Any]:
    if items is None:
        return {}
    if isinstance(items, Mapping):
        return dict(items)
    return {getattr(item, key): item for item in items}


def week_totals(shifts: Iterable, employees, templates=None) -> WeekTotals:
    """Hours and cost per employee for a set of shifts.

    Shifts whose employee is missing from the directory count toward hours at
    zero cost and are listed under ``unknown_employees``.
    """
    employee_lookup = _index(employees, "uid")
    template_lookup = _index(templates, "id")
    minutes_by_uid: Dict[str, int] = {}
    cost_by_uid: Dict[str, float] = {}
    incomplete: set = set()
    unknown: set = set()
    for shift in shifts:
        template = template_lookup.get(shift.shift_template_id) if shift.shift_template_id is not None else None
        minutes = shift_duration(shift, template)
        uid = shift.user_uid
        minutes_by_uid[uid] = minutes_by_uid.get(uid, 0) + minutes
        employee = employee_lookup.get(uid)
        if employee is None:
            unknown.add(uid)
            cost_by_uid.setdefault(uid, 0.0)
            continue
        rate = hourly_rate(getattr(employee, "pay_rate", None))
        if rate is None:
            incomplete.add(uid)
            cost_by_uid.setdefault(uid, 0.0)
            continue
        cost_by_uid[uid] = cost_by_uid.get(uid, 0.0) + minutes / 60.0 * rate
    totals = WeekTotals(incomplete_rates=sorted(incomplete), unknown_employees=sorted(unknown))
    for uid in sorted(minutes_by_uid):
        hours = _hours(minutes_by_uid[uid])
        cost = round_money(max(0.0, cost_by_uid.get(uid, 0.0)))
        totals.per_employee[uid] = {"hours": hours, "cost": cost}
    totals.total_hours = _hours(sum(minutes_by_uid.values()))
    totals.total_cost = round_money(sum(max(0.0, value) for value in cost_by_uid.values()))
    return totals


def list_actual_hours(session, week_start: datetime.date, week_end: datetime.date) -> List[Dict[str, Any]]:
    """Clocked-out time entries in the inclusive range, minus break time."""
    range_start = datetime.datetime.combine(week_start, datetime.time.min)
    range_end = datetime.datetime.combine(week_end + datetime.timedelta(days=1), datetime.time.min)
    stmt = (
        select(TimeEntry)
        .where(TimeEntry.clock_out_time.is_not(None))
        .where(TimeEntry.clock_in_time >= range_start, TimeEntry.clock_in_time < range_end)
        .order_by(TimeEntry.user_uid, TimeEntry.clock_in_time)
    )
    buckets: Dict[Tuple[str, datetime.date], float] = {}
    for entry in session.scalars(stmt):
        clock_in = as_naive_utc(entry.clock_in_time)
        clock_out = as_naive_utc(entry.clock_out_time)
        worked = (clock_out - clock_in).total_seconds() / 60.0
        if entry.break_start_time and entry.break_end_time:
            worked -= (as_naive_utc(entry.break_end_time) - as_naive_utc(entry.break_start_time)).total_seconds() / 60.0
        key = (entry.user_uid, clock_in.date())
        buckets[key] = buckets.get(key, 0.0) + max(0.0, worked)
    return [
        {"user_uid": uid, "date": date_, "actual_minutes": int(round(minutes))}
        for (uid, date_), minutes in sorted(buckets.items())
    ]


def actual_vs_scheduled(shifts: Iterable, templates, actual_hours: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    template_lookup = _index(templates, "id")
    scheduled: Dict[Tuple[str, datetime.date], int] = {}
    for shift in shifts:
        template = template_lookup.get(shift.shift_template_id) if shift.shift_template_id is not None else None
        key = (shift.user_uid, shift.shift_date)
        scheduled[key] = scheduled.get(key, 0) + shift_duration(shift, template)
    actual: Dict[Tuple[str, datetime.date], int] = {}
    for row in actual_hours:
        key = (row["user_uid"], row["date"])
        actual[key] = actual.get(key, 0) + int(row.get("actual_minutes") or 0)
    rows: List[Dict[str, Any]] = []
    for uid, date_ in sorted(set(scheduled) | set(actual)):
        scheduled_minutes = scheduled.get((uid, date_), 0)
        actual_minutes = actual.get((uid, date_), 0)
        rows.append(
            {
                "user_uid": uid,
                "date": date_.isoformat(),
                "scheduled_minutes": scheduled_minutes,
                "actual_minutes": actual_minutes,
                "variance_minutes": actual_minutes - scheduled_minutes,
                "scheduled_hours": _hours(scheduled_minutes),
                "actual_hours": _hours(actual_minutes),
            }
        )
    return rows
