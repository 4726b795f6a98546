from __future__ import annotations

import datetime
import json
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from conftest import WEEK_START, add_employee, add_template, add_time_off
from rota import store
from rota.availability import build_snapshot
from rota.database import AuditLog, ScheduledShift
from rota.errors import ValidationError
from rota.generator.api import build_week_proposal, smart_assign_week
from rota.generator.engine import SmartAssignEngine, normalize_weights, propose_week
from rota.publish import publish_week

WEEK_END = WEEK_START + datetime.timedelta(days=7)
FLAT_SALES = {day: 200.0 for day in range(7)}
WEIGHTS = {"availability": 0.4, "cost": 0.3, "experience": 0.2, "fairness": 0.1}


def _employee(uid, pay_rate=15.0, position="Server", hire_date=datetime.date(2023, 1, 1)):
    return SimpleNamespace(uid=uid, pay_rate=pay_rate, position=position, hire_date=hire_date, status="active")


def _template(template_id=1, name="Day", start=datetime.time(9, 0), minutes=480, max_employees=2, position=None):
    return SimpleNamespace(
        id=template_id,
        name=name,
        start_time=start,
        duration_minutes=minutes,
        max_employees=max_employees,
        position_required=position,
    )


def _time_off(uid, date_):
    start = datetime.datetime.combine(date_, datetime.time.min)
    return SimpleNamespace(id=None, user_uid=uid, start_time=start, end_time=start + datetime.timedelta(days=1), reason="Leave")


def _open_week(records=()):
    return build_snapshot(list(records), WEEK_START, WEEK_END)


def test_unavailable_employee_never_proposed() -> None:
    employees = [_employee("alice", pay_rate=10.0), _employee("bob", pay_rate=30.0)]
    availability = _open_week([_time_off("alice", WEEK_START + datetime.timedelta(days=day)) for day in range(7)])

    proposal = propose_week(WEEK_START, employees, [_template(minutes=240)], availability, 100, WEIGHTS, projected_sales=FLAT_SALES)

    assert proposal.assigned_shifts == 7
    assert {shift.user_uid for shift in proposal.shifts} == {"bob"}


def test_identical_inputs_give_identical_proposals() -> None:
    employees = [_employee(uid, pay_rate=rate) for uid, rate in (("cara", 14.0), ("alice", 16.0), ("bob", 14.0))]
    templates = [_template(1, "Open", datetime.time(8, 0), 360, 2), _template(2, "Close", datetime.time(16, 0), 420, 1)]
    availability = _open_week([_time_off("bob", WEEK_START + datetime.timedelta(days=2))])
    sales = {0: 300.0, 1: 450.0, 2: 520.0, 3: 380.0, 4: 610.0, 5: 700.0, 6: 250.0}

    first = propose_week(WEEK_START, employees, templates, availability, 40, WEIGHTS, projected_sales=sales)
    second = propose_week(WEEK_START, list(reversed(employees)), list(reversed(templates)), availability, 40, WEIGHTS, projected_sales=sales)

    assert first.to_dict() == second.to_dict()


def test_ties_break_by_fewer_hours_then_uid() -> None:
    employees = [_employee("bob"), _employee("alice")]

    proposal = propose_week(WEEK_START, employees, [_template(max_employees=1)], _open_week(), 100, WEIGHTS, projected_sales=FLAT_SALES)

    picks = [shift.user_uid for shift in proposal.shifts]
    assert picks[:4] == ["alice", "bob", "alice", "bob"]


def test_cost_cap_drops_optional_slots_before_critical() -> None:
    employees = [_employee("alice"), _employee("bob"), _employee("cara")]
    sales = {day: 400.0 for day in range(7)}

    proposal = propose_week(WEEK_START, employees, [_template()], _open_week(), 10, WEIGHTS, projected_sales=sales)

    assert proposal.cost_cap_amount == 280.0
    assert proposal.labor_cost <= proposal.cost_cap_amount
    monday = [shift for shift in proposal.shifts if shift.date == WEEK_START]
    assert [shift.critical for shift in monday] == [True, False]
    assert proposal.cap_warning is not None
    assert proposal.cap_warning.unassigned_slots == 12
    assert {slot.reason for slot in proposal.unassigned_slots} == {"cost_cap"}
    tuesday = [slot for slot in proposal.unassigned_slots if slot.date == WEEK_START + datetime.timedelta(days=1)]
    assert [slot.critical for slot in tuesday] == [True, False]


def test_zero_cap_assigns_only_unpaid_staff() -> None:
    employees = [_employee("alice", pay_rate=None)]

    proposal = propose_week(WEEK_START, employees, [_template(minutes=240, max_employees=1)], _open_week(), 0, WEIGHTS, projected_sales=FLAT_SALES)

    assert proposal.assigned_shifts == 7
    assert proposal.labor_cost == 0.0
    assert proposal.incomplete_rates == ["alice"]
    assert proposal.to_dict()["estimate_incomplete"] is True


def test_event_day_adds_critical_slots() -> None:
    saturday = WEEK_START + datetime.timedelta(days=5)
    event = SimpleNamespace(id=1, event_date=saturday, name="Derby", sales_multiplier=2.0)
    employees = [_employee(uid) for uid in ("alice", "bob", "cara")]

    proposal = propose_week(
        WEEK_START,
        employees,
        [_template(max_employees=3)],
        _open_week(),
        100,
        WEIGHTS,
        [event],
        consider_events=True,
        projected_sales=FLAT_SALES,
    )

    saturday_shifts = [shift for shift in proposal.shifts if shift.date == saturday]
    assert len(saturday_shifts) == 2
    assert all(shift.critical for shift in saturday_shifts)
    assert all(shift.notes.endswith("(Event day)") for shift in saturday_shifts)
    friday = [shift for shift in proposal.shifts if shift.date == saturday - datetime.timedelta(days=1)]
    assert len(friday) == 1
    assert friday[0].notes.startswith("Smart assigned - Score: ")


def test_events_ignored_unless_requested() -> None:
    saturday = WEEK_START + datetime.timedelta(days=5)
    event = SimpleNamespace(id=1, event_date=saturday, name="Derby", sales_multiplier=2.0)

    proposal = propose_week(
        WEEK_START, [_employee("alice"), _employee("bob")], [_template()], _open_week(), 100, WEIGHTS, [event], projected_sales=FLAT_SALES
    )

    assert len([shift for shift in proposal.shifts if shift.date == saturday]) == 1


def test_weekly_hour_limit_respected() -> None:
    engine = SmartAssignEngine({"max_hours_week": 16})

    proposal = engine.propose(WEEK_START, [_employee("alice")], [_template(max_employees=1)], _open_week(), 100, WEIGHTS, projected_sales=FLAT_SALES)

    assert proposal.assigned_shifts == 2
    assert {slot.reason for slot in proposal.unassigned_slots} == {"no_candidates"}


def test_weights_are_normalized_and_validated() -> None:
    assert normalize_weights({"availability": 2, "cost": 2, "experience": 0, "fairness": 0}) == {
        "availability": 0.5,
        "cost": 0.5,
        "experience": 0.0,
        "fairness": 0.0,
    }
    assert normalize_weights({}) == {key: 0.25 for key in WEIGHTS}
    with pytest.raises(ValidationError):
        normalize_weights({"cost": -1})


def test_smart_assign_week_replaces_shifts_and_audits(session) -> None:
    for uid in ("alice", "bob", "cara"):
        add_employee(session, uid)
    template = add_template(session, "Day", datetime.time(9, 0), 480, max_employees=2)
    add_time_off(session, "alice", datetime.datetime(2024, 4, 1, 0, 0), datetime.datetime(2024, 4, 2, 0, 0))
    overrides = {"max_labor_cost_percentage": 100}

    first = smart_assign_week(session, WEEK_START, actor="manager", overrides=overrides)
    second = smart_assign_week(session, WEEK_START, actor="manager", overrides=overrides)

    stored = session.scalars(select(ScheduledShift)).all()
    assert first["shifts_created"] == second["shifts_created"] == len(stored) == 11
    assert second["deleted_shifts"] == 11
    assert all(shift.shift_template_id == template.id for shift in stored)
    assert "alice" not in {shift.user_uid for shift in stored if shift.shift_date == WEEK_START}
    logs = session.scalars(select(AuditLog).where(AuditLog.action == "ROTA_SMART_ASSIGN")).all()
    assert len(logs) == 2
    assert json.loads(logs[-1].payloadJSON)["deleted_shifts"] == 11


def test_smart_assign_reopens_published_week(session) -> None:
    for uid in ("alice", "bob"):
        add_employee(session, uid)
    add_template(session, "Day", datetime.time(9, 0), 480, max_employees=1)
    smart_assign_week(session, WEEK_START, actor="manager", overrides={"max_labor_cost_percentage": 100})
    publish_week(session, WEEK_START, actor="manager")

    result = smart_assign_week(session, WEEK_START, actor="manager", overrides={"max_labor_cost_percentage": 100})

    assert result["reopened"] is True
    assert {row["status"] for row in store.list_week(session, WEEK_START)} == {"draft"}


def test_cap_warning_surfaces_in_summary(session) -> None:
    for uid in ("alice", "bob"):
        add_employee(session, uid, pay_rate=40.0)
    add_template(session, "Day", datetime.time(9, 0), 480, max_employees=2)

    result = smart_assign_week(session, WEEK_START, actor="manager", overrides={"max_labor_cost_percentage": 5})

    assert result["cap_warning"]["error"] == "cap_exceeded"
    assert result["cap_warning"]["unassigned_slots"] > 0
    assert result["warnings"][0].startswith("Labor cost cap of 5% reached")


def test_proposal_requires_templates(session) -> None:
    add_employee(session, "alice")
    with pytest.raises(ValidationError):
        build_week_proposal(session, WEEK_START)
