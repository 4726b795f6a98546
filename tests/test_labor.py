from __future__ import annotations

import datetime
from types import SimpleNamespace

from rota.labor import actual_vs_scheduled, hourly_rate, labor_percentage, round_money, shift_cost, week_totals


def _shift(uid, date_, template_id=None, custom=None, actual=None):
    return SimpleNamespace(
        id=None,
        user_uid=uid,
        shift_date=date_,
        shift_template_id=template_id,
        custom_start_time=custom[0] if custom else None,
        custom_end_time=custom[1] if custom else None,
        actual_start_time=actual[0] if actual else None,
        actual_end_time=actual[1] if actual else None,
        template=None,
    )


MONDAY = datetime.date(2024, 4, 1)
TEMPLATE = SimpleNamespace(id=1, start_time=datetime.time(9, 0), duration_minutes=480)


def test_hourly_rate_rejects_unusable_values() -> None:
    assert hourly_rate(None) is None
    assert hourly_rate(0) is None
    assert hourly_rate(-3) is None
    assert hourly_rate(float("nan")) is None
    assert hourly_rate("abc") is None
    assert hourly_rate("12.5") == 12.5


def test_round_money_rounds_half_up() -> None:
    assert round_money(2.675) == 2.68
    assert round_money(0.125) == 0.13


def test_shift_cost_for_overnight_custom_shift() -> None:
    shift = _shift("a", MONDAY, custom=(datetime.time(22, 0), datetime.time(6, 0)))
    assert shift_cost(shift, 12.0) == 96.0
    assert shift_cost(shift, None) == 0.0


def test_week_totals_flags_missing_rates_and_unknown_staff() -> None:
    employees = [
        SimpleNamespace(uid="alice", pay_rate=20.0),
        SimpleNamespace(uid="bob", pay_rate=None),
    ]
    shifts = [
        _shift("alice", MONDAY, template_id=1),
        _shift("alice", MONDAY + datetime.timedelta(days=1), custom=(datetime.time(12, 0), datetime.time(16, 30))),
        _shift("bob", MONDAY, template_id=1),
        _shift("ghost", MONDAY, custom=(datetime.time(8, 0), datetime.time(10, 0))),
    ]
    totals = week_totals(shifts, employees, [TEMPLATE])

    assert totals.per_employee["alice"] == {"hours": 12.5, "cost": 250.0}
    assert totals.per_employee["bob"] == {"hours": 8.0, "cost": 0.0}
    assert totals.per_employee["ghost"]["cost"] == 0.0
    assert totals.total_hours == 22.5
    assert totals.total_cost == 250.0
    assert totals.incomplete_rates == ["bob"]
    assert totals.unknown_employees == ["ghost"]
    assert totals.estimate_incomplete is True


def test_labor_percentage_handles_zero_sales() -> None:
    assert labor_percentage(250.0, 1000.0) == 25.0
    assert labor_percentage(250.0, 0) == 0.0


def test_actual_vs_scheduled_reports_variance() -> None:
    shifts = [_shift("alice", MONDAY, template_id=1)]
    actual = [{"user_uid": "alice", "date": MONDAY, "actual_minutes": 450}]
    rows = actual_vs_scheduled(shifts, {1: TEMPLATE}, actual)

    assert rows == [
        {
            "user_uid": "alice",
            "date": "2024-04-01",
            "scheduled_minutes": 480,
            "actual_minutes": 450,
            "variance_minutes": -30,
            "scheduled_hours": 8.0,
            "actual_hours": 7.5,
        }
    ]
