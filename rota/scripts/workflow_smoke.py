from __future__ import annotations

import argparse
import datetime
from typing import Dict, List, Tuple

from sqlalchemy import select

from ..database import (
    Employee,
    EventDay,
    SessionLocal,
    ShiftTemplate,
    format_week_label,
    init_database,
    normalize_week_start,
    save_week_daily_projection_values,
)
from ..errors import ConflictError
from ..generator.api import smart_assign_week
from ..publish import publish_week
from ..settings import ensure_default_settings
from ..store import create_template, week_view


DEMO_STAFF: List[Tuple[str, str, str, float, datetime.date]] = [
    ("ana", "Ana Ortiz", "Server", 16.5, datetime.date(2019, 5, 1)),
    ("ben", "Ben Hale", "Server", 15.0, datetime.date(2022, 9, 12)),
    ("cleo", "Cleo Park", "Bartender", 18.0, datetime.date(2020, 3, 2)),
    ("dev", "Dev Rao", "Cook", 17.25, datetime.date(2021, 1, 18)),
    ("emi", "Emi Sato", "Cook", 16.0, datetime.date(2023, 6, 5)),
    ("fin", "Fin Doyle", "Host", 14.0, datetime.date(2024, 2, 20)),
]

DEMO_TEMPLATES: List[Dict[str, object]] = [
    {"name": "Open", "start_time": "09:00", "duration_minutes": 360, "max_employees": 2},
    {"name": "Dinner", "start_time": "16:00", "duration_minutes": 420, "max_employees": 3},
    {"name": "Late Bar", "start_time": "20:00", "duration_minutes": 360, "position_required": "Bartender"},
]


def _default_week_start(today: datetime.date | None = None) -> datetime.date:
    base = today or datetime.date.today()
    delta = (7 - base.weekday()) % 7
    delta = delta or 7
    return base + datetime.timedelta(days=delta)


def _projection_payload() -> Dict[int, Dict[str, object]]:
    sales = [900.0, 950.0, 1100.0, 1200.0, 1600.0, 1750.0, 800.0]
    notes = {4: "Payday Friday", 5: "Derby night"}
    return {idx: {"projected_sales_amount": amount, "notes": notes.get(idx, "")} for idx, amount in enumerate(sales)}


def seed_demo_data(session, week_start: datetime.date, *, actor: str) -> Dict[str, int]:
    """Insert demo staff, templates, projections and one event when the tables are empty."""
    added = {"employees": 0, "templates": 0, "events": 0}
    if session.scalars(select(Employee)).first() is None:
        for uid, name, position, rate, hired in DEMO_STAFF:
            session.add(
                Employee(uid=uid, full_name=name, email=f"{uid}@example.com", position=position, pay_rate=rate, hire_date=hired)
            )
            added["employees"] += 1
        session.commit()
    if session.scalars(select(ShiftTemplate)).first() is None:
        for values in DEMO_TEMPLATES:
            create_template(
                session,
                values["name"],
                values["start_time"],
                values["duration_minutes"],
                position_required=values.get("position_required"),
                max_employees=values.get("max_employees", 1),
                actor=actor,
            )
            added["templates"] += 1
    saturday = week_start + datetime.timedelta(days=5)
    if session.scalars(select(EventDay).where(EventDay.event_date == saturday)).first() is None:
        session.add(EventDay(event_date=saturday, name="Derby night", event_type="sports", expected_impact="high", sales_multiplier=1.8))
        session.commit()
        added["events"] += 1
    save_week_daily_projection_values(session, week_start, _projection_payload())
    return added


def run_workflow(week_start: datetime.date, *, actor: str, session_factory=SessionLocal, cap: float | None = None) -> Dict[str, object]:
    ensure_default_settings(session_factory)
    with session_factory() as session:
        added = seed_demo_data(session, week_start, actor=actor)
        if any(added.values()):
            print(f"[workflow] Seeded demo data: {added}")
        overrides: Dict[str, object] = {"consider_events": True}
        if cap is not None:
            overrides["max_labor_cost_percentage"] = cap
        result = smart_assign_week(session, week_start, actor=actor, overrides=overrides)
        print(
            f"[workflow] Smart assign created {result['shifts_created']} shifts "
            f"({len(result['unassigned_slots'])} unassigned)."
        )
        for warning in result.get("warnings", []):
            print(f"[workflow] Warning: {warning}")
        try:
            published = publish_week(session, week_start, actor=actor)
        except ConflictError as exc:
            print(f"[workflow] Publish blocked: {exc.message}")
            raise SystemExit(1)
        print(
            f"[workflow] Published {published['published_shifts']} shifts for "
            f"{len(published['affected_employees'])} employees."
        )
        view = week_view(session, week_start)
    totals = view["week_totals"]
    print(f"[workflow] Total hours: {totals['total_hours']} | Labor cost: ${totals['total_cost']:.2f}")
    return {"smart_assign": result, "publish": published, "week": view}


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Run an end-to-end smoke test that seeds demo staff and templates, "
            "smart-assigns a week, publishes it and prints labor totals."
        )
    )
    parser.add_argument(
        "--week-start",
        help="ISO date (YYYY-MM-DD) for the Monday to target. Defaults to next Monday.",
    )
    parser.add_argument("--actor", default="workflow_smoke", help="Audit trail actor name.")
    parser.add_argument("--cap", type=float, help="Override the labor cost cap percentage for this run.")
    return parser.parse_args(argv)


def main(argv=None) -> None:
    init_database()
    args = parse_args(argv)
    if args.week_start:
        try:
            week_start = datetime.date.fromisoformat(args.week_start)
        except ValueError as exc:
            raise SystemExit(f"Invalid --week-start value: {exc}") from exc
    else:
        week_start = _default_week_start()
    week_start = normalize_week_start(week_start)
    print(f"[workflow] Target week start: {week_start} ({format_week_label(week_start)})")
    run_workflow(week_start, actor=args.actor, cap=args.cap)


if __name__ == "__main__":
    main()
