from __future__ import annotations

import datetime
import json

import pytest
from sqlalchemy import select

from rota.database import AuditLog
from rota.errors import ValidationError
from rota.settings import (
    build_default_settings,
    deep_update,
    load_active_settings,
    sales_for_day,
    save_settings,
    smart_assign_settings,
    validate_settings,
)


def test_defaults_are_independent_copies() -> None:
    first = build_default_settings()
    first["smart_assign"]["priority_factors"]["cost"] = 9
    assert build_default_settings()["smart_assign"]["priority_factors"]["cost"] == 0.3


def test_deep_update_merges_nested_values() -> None:
    merged = deep_update({"a": {"b": 1, "c": 2}, "d": 3}, {"a": {"c": 5}})
    assert merged == {"a": {"b": 1, "c": 5}, "d": 3}


def test_smart_assign_settings_coerces_and_fills_gaps() -> None:
    smart = smart_assign_settings({"smart_assign": {"max_labor_cost_percentage": "30", "priority_factors": {"cost": "0.5"}}})
    assert smart["max_labor_cost_percentage"] == 30.0
    assert smart["priority_factors"] == {"availability": 0.4, "cost": 0.5, "experience": 0.2, "fairness": 0.1}
    assert smart["default_sales_pattern"]["Fri"] == 300.0


def test_validate_settings_reports_each_problem() -> None:
    settings = build_default_settings()
    settings["smart_assign"]["max_labor_cost_percentage"] = 120
    settings["smart_assign"]["priority_factors"]["fairness"] = -1
    problems = validate_settings(settings)
    assert "max_labor_cost_percentage must be between 0 and 100." in problems
    assert "priority_factors.fairness must be >= 0." in problems


def test_sales_for_day_follows_weekday_pattern() -> None:
    settings = build_default_settings()
    assert sales_for_day(settings, datetime.date(2024, 4, 5)) == 300.0
    assert sales_for_day(settings, datetime.date(2024, 4, 7)) == 150.0


def test_save_settings_persists_and_audits(session) -> None:
    save_settings(session, {"smart_assign": {"consider_events": True}}, edited_by="owner")

    assert load_active_settings(session)["smart_assign"]["consider_events"] is True
    log = session.scalars(select(AuditLog).where(AuditLog.action == "SETTINGS_EDIT")).one()
    assert log.user_id == "owner"
    assert json.loads(log.payloadJSON) == {"smart_assign": {"consider_events": True}}


def test_save_settings_rejects_invalid_values(session) -> None:
    with pytest.raises(ValidationError):
        save_settings(session, {"smart_assign": {"sales_per_staff": 0}}, edited_by="owner")
    assert load_active_settings(session)["smart_assign"]["sales_per_staff"] == 200.0


def test_load_active_settings_accepts_session_factory(session_factory) -> None:
    assert load_active_settings(session_factory)["name"] == "Default Rota Settings"
