from __future__ import annotations

import copy
import datetime
from typing import Any, Dict, List

from .database import get_active_settings, record_audit_log, upsert_settings
from .errors import ValidationError


WEEKDAY_TOKENS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
PRIORITY_FACTOR_KEYS = ("availability", "cost", "experience", "fairness")

SMART_ASSIGN_DEFAULTS: Dict[str, Any] = {
    "max_labor_cost_percentage": 25.0,
    "priority_factors": {
        "availability": 0.4,
        "cost": 0.3,
        "experience": 0.2,
        "fairness": 0.1,
    },
    "consider_events": False,
    "sales_per_staff": 200.0,
    "event_sales_multiplier": 1.5,
    # Event days staff at least this multiple of the ordinary level.
    "event_staffing_floor": 1.5,
    "default_sales_pattern": {
        "Mon": 180.0,
        "Tue": 200.0,
        "Wed": 220.0,
        "Thu": 250.0,
        "Fri": 300.0,
        "Sat": 280.0,
        "Sun": 150.0,
    },
    "max_hours_week": 40.0,
    "mismatch_experience_score": 0.6,
}

BASELINE_SETTINGS: Dict[str, Any] = {
    "name": "Default Rota Settings",
    "description": "Seeded parameters for smart assignment and labor-cost capping.",
    "smart_assign": SMART_ASSIGN_DEFAULTS,
}


def build_default_settings() -> Dict[str, Any]:
    """Return a deepcopy so callers can mutate the settings safely."""
    return copy.deepcopy(BASELINE_SETTINGS)


def deep_update(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_update(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _coerce_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _normalize_settings(settings: Dict) -> Dict:
    """Fill gaps with defaults and coerce numbers so the engine can trust the payload."""
    if not isinstance(settings, dict):
        settings = {}
    normalized = deep_update(build_default_settings(), settings)
    smart = normalized.get("smart_assign")
    if not isinstance(smart, dict):
        smart = copy.deepcopy(SMART_ASSIGN_DEFAULTS)
        normalized["smart_assign"] = smart
    for key in (
        "max_labor_cost_percentage",
        "sales_per_staff",
        "event_sales_multiplier",
        "event_staffing_floor",
        "max_hours_week",
        "mismatch_experience_score",
    ):
        smart[key] = _coerce_float(smart.get(key), SMART_ASSIGN_DEFAULTS[key])
    smart["consider_events"] = bool(smart.get("consider_events"))
    factors = smart.get("priority_factors")
    if not isinstance(factors, dict):
        factors = {}
    smart["priority_factors"] = {
        key: _coerce_float(factors.get(key), SMART_ASSIGN_DEFAULTS["priority_factors"][key])
        for key in PRIORITY_FACTOR_KEYS
    }
    pattern = smart.get("default_sales_pattern")
    if not isinstance(pattern, dict):
        pattern = {}
    smart["default_sales_pattern"] = {
        token: max(0.0, _coerce_float(pattern.get(token), SMART_ASSIGN_DEFAULTS["default_sales_pattern"][token]))
        for token in WEEKDAY_TOKENS
    }
    return normalized


def validate_settings(settings: Dict) -> List[str]:
    """Return a list of problems; empty means the payload is safe to store."""
    problems: List[str] = []
    smart = settings.get("smart_assign", {}) if isinstance(settings, dict) else {}
    factors = smart.get("priority_factors", {})
    for key, value in factors.items():
        if value < 0:
            problems.append(f"priority_factors.{key} must be >= 0.")
    cap = smart.get("max_labor_cost_percentage", 0)
    if cap < 0 or cap > 100:
        problems.append("max_labor_cost_percentage must be between 0 and 100.")
    if smart.get("sales_per_staff", 0) <= 0:
        problems.append("sales_per_staff must be greater than zero.")
    if smart.get("max_hours_week", 0) <= 0:
        problems.append("max_hours_week must be greater than zero.")
    if smart.get("event_sales_multiplier", 0) <= 0:
        problems.append("event_sales_multiplier must be greater than zero.")
    if smart.get("event_staffing_floor", 0) < 1:
        problems.append("event_staffing_floor must be at least 1.")
    mismatch = smart.get("mismatch_experience_score", 0)
    if mismatch < 0 or mismatch > 1:
        problems.append("mismatch_experience_score must be between 0 and 1.")
    return problems


def load_active_settings(conn) -> Dict:
    """Return the active settings payload merged over the defaults."""
    if conn is None:
        return _normalize_settings({})
    if callable(conn):
        with conn() as session:
            record = get_active_settings(session)
            return _normalize_settings(record.params_dict() if record else {})
    record = get_active_settings(conn)
    return _normalize_settings(record.params_dict() if record else {})


def smart_assign_settings(settings: Dict) -> Dict[str, Any]:
    return _normalize_settings(settings).get("smart_assign", {})


def sales_for_day(settings: Dict, date_: datetime.date) -> float:
    pattern = smart_assign_settings(settings).get("default_sales_pattern", {})
    return float(pattern.get(WEEKDAY_TOKENS[date_.weekday()], 0.0))


def save_settings(session, changes: Dict[str, Any], *, edited_by: str = "system") -> Dict[str, Any]:
    """Merge ``changes`` over the active settings, validate, persist and audit."""
    if not isinstance(changes, dict):
        raise ValidationError("Settings payload must be an object.")
    current = load_active_settings(session)
    merged = _normalize_settings(deep_update(current, changes))
    problems = validate_settings(merged)
    if problems:
        raise ValidationError("; ".join(problems), field="smart_assign", problems=problems)
    name = merged.get("name") or BASELINE_SETTINGS["name"]
    params = {key: value for key, value in merged.items() if key != "name"}
    record = upsert_settings(session, name, params, edited_by=edited_by)
    record_audit_log(session, edited_by, "SETTINGS_EDIT", "RotaSettings", record.id, changes)
    return merged


def ensure_default_settings(session_factory) -> None:
    """Seed the default settings exactly once so smart assign can run end-to-end."""

    with session_factory() as session:
        if get_active_settings(session):
            return
        defaults = build_default_settings()
        name = defaults.get("name", "Default Rota Settings")
        params = {key: value for key, value in defaults.items() if key != "name"}
        upsert_settings(session, name, params, edited_by="system")
