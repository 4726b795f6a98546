"""FastAPI surface over the rota engine.

Routes stay thin: parse the request, hold the week lock for mutations, call
the service function and encode the result. Engine errors map onto HTTP
status codes in one exception handler.
"""

from __future__ import annotations

from contextlib import ExitStack, asynccontextmanager
import datetime
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .database import (
    EventDay,
    ScheduledShift,
    SessionLocal,
    get_active_settings,
    get_week_daily_projections,
    init_database,
    list_events,
    save_week_daily_projection_values,
    week_bounds,
)
from .errors import ConflictError, InvalidStateError, NotFoundError, RotaError, ValidationError
from .generator.api import smart_assign_week
from .labor import actual_vs_scheduled, labor_percentage, list_actual_hours, week_totals
from .locks import WeekLockRegistry
from .publish import copy_previous_week, publish_week, reopen_week, week_status
from . import store
from .settings import ensure_default_settings, load_active_settings, sales_for_day, save_settings
from .time_source import source_from_payload


ERROR_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
    InvalidStateError: 409,
}


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_database()
    ensure_default_settings(SessionLocal)
    yield


app = FastAPI(title="Rota Engine API", version="0.1", lifespan=lifespan)
app.state.week_locks = WeekLockRegistry()


@app.exception_handler(RotaError)
async def rota_error_handler(_: Request, exc: RotaError) -> JSONResponse:
    status_code = next((code for kind, code in ERROR_STATUS.items() if isinstance(exc, kind)), 400)
    return JSONResponse(status_code=status_code, content=jsonable_encoder({"detail": exc.to_dict()}))


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_week_locks(request: Request) -> WeekLockRegistry:
    return request.app.state.week_locks


def _parse_date(value: Any, field: str) -> datetime.date:
    if isinstance(value, datetime.date):
        return value
    try:
        return datetime.date.fromisoformat(str(value))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{field} must be YYYY-MM-DD")


def _required_date(payload: Dict[str, Any], field: str) -> datetime.date:
    value = payload.get(field)
    if not value:
        raise HTTPException(status_code=400, detail=f"{field} is required")
    return _parse_date(value, field)


def _required_text(payload: Dict[str, Any], field: str) -> str:
    value = payload.get(field) or ""
    if not isinstance(value, str):
        raise HTTPException(status_code=400, detail=f"{field} must be a string")
    value = value.strip()
    if not value:
        raise HTTPException(status_code=400, detail=f"{field} is required")
    return value


def _actor(payload: Optional[Dict[str, Any]]) -> str:
    return (str((payload or {}).get("actor") or "api")).strip() or "api"


def _range_from_query(
    week_start: Optional[str],
    start_date: Optional[str],
    end_date: Optional[str],
):
    if week_start:
        return week_bounds(_parse_date(week_start, "week_start"))
    if start_date and end_date:
        return _parse_date(start_date, "start_date"), _parse_date(end_date, "end_date")
    if start_date:
        return week_bounds(_parse_date(start_date, "start_date"))
    raise HTTPException(status_code=400, detail="week_start or start_date and end_date are required")


def _respond(payload: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload))


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Rota
# ---------------------------------------------------------------------------


@app.get("/api/v1/rota")
def list_rota(
    week_start: Optional[str] = Query(None),
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    user_uid: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    db: Session = Depends(get_db),
) -> JSONResponse:
    if week_start and not user_uid and not status:
        return _respond(store.week_view(db, _parse_date(week_start, "week_start")))
    start, end = _range_from_query(week_start, start_date, end_date)
    shifts = store.query_shifts(db, start, end, user_uid=user_uid, status=status)
    totals = week_totals(shifts, store.employee_lookup(db), store.template_lookup(db))
    return _respond(
        {
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
            "shifts": store.list_week(db, start, end, user_uid=user_uid, status=status),
            "week_totals": totals.to_dict(),
        }
    )


@app.post("/api/v1/rota")
def assign_shift(
    payload: Dict[str, Any],
    db: Session = Depends(get_db),
    locks: WeekLockRegistry = Depends(get_week_locks),
) -> JSONResponse:
    user_uid = _required_text(payload, "user_uid")
    shift_date = _required_date(payload, "shift_date")
    source = source_from_payload(payload)
    with locks.hold(shift_date):
        shift = store.assign(
            db,
            user_uid,
            shift_date,
            source,
            actor=_actor(payload),
            override=bool(payload.get("override")),
            override_note=payload.get("override_note"),
            reopen=bool(payload.get("reopen")),
            notes=payload.get("notes"),
        )
        body = store.shift_to_dict(shift)
    return _respond(body, status_code=201)


def _shift_week(db: Session, shift_id: int) -> datetime.date:
    shift = db.get(ScheduledShift, shift_id)
    if shift is None:
        raise NotFoundError("shift", shift_id)
    return shift.shift_date


@app.delete("/api/v1/rota/{shift_id}")
def remove_shift(
    shift_id: int,
    reopen: bool = Query(False),
    actor: str = Query("api"),
    db: Session = Depends(get_db),
    locks: WeekLockRegistry = Depends(get_week_locks),
) -> JSONResponse:
    with locks.hold(_shift_week(db, shift_id)):
        result = store.remove(db, shift_id, actor=actor, reopen=reopen)
    return _respond(result)


@app.put("/api/v1/rota/{shift_id}/actual")
def update_actual(
    shift_id: int,
    payload: Dict[str, Any],
    db: Session = Depends(get_db),
    locks: WeekLockRegistry = Depends(get_week_locks),
) -> JSONResponse:
    with locks.hold(_shift_week(db, shift_id)):
        shift = store.update_actual_times(
            db,
            shift_id,
            payload.get("actual_start_time"),
            payload.get("actual_end_time"),
            actor=_actor(payload),
            reopen=bool(payload.get("reopen")),
        )
        body = store.shift_to_dict(shift)
    return _respond(body)


@app.get("/api/v1/rota/stats")
def rota_stats(
    week_start: Optional[str] = Query(None),
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    db: Session = Depends(get_db),
) -> JSONResponse:
    start, end = _range_from_query(week_start, start_date, end_date)
    return _respond(store.week_stats(db, start, end))


@app.get("/api/v1/rota/status")
def rota_status(week_start: str = Query(...), db: Session = Depends(get_db)) -> JSONResponse:
    start, _ = week_bounds(_parse_date(week_start, "week_start"))
    return _respond({"week_start": start.isoformat(), "status": week_status(db, start)})


@app.get("/api/v1/rota/availability")
def rota_availability(week_start: str = Query(...), db: Session = Depends(get_db)) -> JSONResponse:
    return _respond(store.availability_grid(db, _parse_date(week_start, "week_start")))


@app.get("/api/v1/rota/events")
def rota_events(week_start: str = Query(...), db: Session = Depends(get_db)) -> JSONResponse:
    start, end = week_bounds(_parse_date(week_start, "week_start"))
    events = [
        {
            "id": event.id,
            "date": event.event_date.isoformat(),
            "name": event.name,
            "type": event.event_type,
            "expected_impact": event.expected_impact,
            "estimated_sales_multiplier": event.sales_multiplier,
        }
        for event in list_events(db, start, end)
    ]
    return _respond({"week_start": start.isoformat(), "events": events})


@app.post("/api/v1/rota/events")
def add_event(payload: Dict[str, Any], db: Session = Depends(get_db)) -> JSONResponse:
    event_date = _required_date(payload, "date")
    name = _required_text(payload, "name")
    impact = payload.get("expected_impact") or "medium"
    if impact not in {"low", "medium", "high"}:
        raise HTTPException(status_code=400, detail="expected_impact must be low, medium or high")
    try:
        multiplier = float(payload.get("sales_multiplier", 1.5))
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="sales_multiplier must be a number")
    if multiplier <= 0:
        raise HTTPException(status_code=400, detail="sales_multiplier must be greater than zero")
    event = EventDay(
        event_date=event_date,
        name=name,
        event_type=payload.get("type") or "event",
        expected_impact=impact,
        sales_multiplier=multiplier,
    )
    db.add(event)
    db.commit()
    db.refresh(event)
    return _respond({"id": event.id, "date": event.event_date.isoformat(), "name": event.name}, status_code=201)


@app.post("/api/v1/rota/projections")
def save_projections(payload: Dict[str, Any], db: Session = Depends(get_db)) -> JSONResponse:
    week_start = _required_date(payload, "week_start")
    values: Dict[int, Dict[str, Any]] = {}
    for entry in payload.get("days") or []:
        try:
            day_idx = int(entry.get("day_of_week"))
            amount = float(entry.get("projected_sales_amount") or 0.0)
        except (TypeError, ValueError):
            raise HTTPException(status_code=400, detail="days need an integer day_of_week and numeric projected_sales_amount")
        values[day_idx] = {"projected_sales_amount": amount, "notes": entry.get("notes") or ""}
    saved = save_week_daily_projection_values(db, week_start, values)
    return _respond({"week_start": week_bounds(week_start)[0].isoformat(), "saved": saved})


@app.post("/api/v1/rota/smart-assign")
def smart_assign(
    payload: Dict[str, Any],
    db: Session = Depends(get_db),
    locks: WeekLockRegistry = Depends(get_week_locks),
) -> JSONResponse:
    week_start = _required_date(payload, "week_start")
    overrides = {
        key: payload.get(key)
        for key in ("max_labor_cost_percentage", "priority_factors", "consider_events")
        if key in payload
    }
    with locks.hold(week_start):
        result = smart_assign_week(db, week_start, actor=_actor(payload), overrides=overrides)
    return _respond(result)


@app.post("/api/v1/rota/publish")
def publish(
    payload: Dict[str, Any],
    db: Session = Depends(get_db),
    locks: WeekLockRegistry = Depends(get_week_locks),
) -> JSONResponse:
    week_start = _required_date(payload, "week_start")
    with locks.hold(week_start):
        result = publish_week(db, week_start, actor=_actor(payload))
    return _respond(result)


@app.post("/api/v1/rota/reopen")
def reopen(
    payload: Dict[str, Any],
    db: Session = Depends(get_db),
    locks: WeekLockRegistry = Depends(get_week_locks),
) -> JSONResponse:
    week_start = _required_date(payload, "week_start")
    with locks.hold(week_start):
        result = reopen_week(db, week_start, actor=_actor(payload))
    return _respond(result)


@app.post("/api/v1/rota/copy-previous-week")
def copy_week(
    payload: Dict[str, Any],
    db: Session = Depends(get_db),
    locks: WeekLockRegistry = Depends(get_week_locks),
) -> JSONResponse:
    target = _required_date(payload, "week_start")
    source = _parse_date(payload["source_week_start"], "source_week_start") if payload.get("source_week_start") else None
    with locks.hold(target):
        result = copy_previous_week(
            db,
            target,
            bool(payload.get("overwrite_conflicts")),
            actor=_actor(payload),
            source_week_start=source,
        )
    return _respond(result)


@app.get("/api/v1/my-schedule/{user_uid}")
def my_schedule(
    user_uid: str,
    week_start: Optional[str] = Query(None),
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    db: Session = Depends(get_db),
) -> JSONResponse:
    if not (week_start or start_date):
        week_start = datetime.date.today().isoformat()
    start, end = _range_from_query(week_start, start_date, end_date)
    shifts = store.personal_schedule(db, user_uid, start, end)
    total_minutes = sum(shift["duration_minutes"] for shift in shifts)
    return _respond(
        {
            "user_uid": user_uid,
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
            "shifts": shifts,
            "total_hours": round(total_minutes / 60.0, 2),
        }
    )


@app.get("/api/v1/reports/labor")
def labor_report(week_start: str = Query(...), db: Session = Depends(get_db)) -> JSONResponse:
    start, end = week_bounds(_parse_date(week_start, "week_start"))
    shifts = store.query_shifts(db, start, end)
    templates = store.template_lookup(db)
    totals = week_totals(shifts, store.employee_lookup(db), templates)
    settings = load_active_settings(db)
    stored = get_week_daily_projections(db, start)
    projected_sales = 0.0
    for offset in range(7):
        day = start + datetime.timedelta(days=offset)
        projected_sales += stored.get(offset, sales_for_day(settings, day))
    return _respond(
        {
            "week_start": start.isoformat(),
            "week_end": end.isoformat(),
            "week_totals": totals.to_dict(),
            "projected_sales": round(projected_sales, 2),
            "labor_percentage": labor_percentage(totals.total_cost, projected_sales),
            "actual_vs_scheduled": actual_vs_scheduled(shifts, templates, list_actual_hours(db, start, end)),
        }
    )


# ---------------------------------------------------------------------------
# Shift templates
# ---------------------------------------------------------------------------


@app.get("/api/v1/shift-templates")
def list_shift_templates(db: Session = Depends(get_db)) -> JSONResponse:
    return _respond({"templates": [store.template_to_dict(template) for template in store.list_templates(db)]})


@app.post("/api/v1/shift-templates")
def create_shift_template(payload: Dict[str, Any], db: Session = Depends(get_db)) -> JSONResponse:
    template = store.create_template(
        db,
        payload.get("name"),
        payload.get("start_time"),
        payload.get("duration_minutes"),
        break_duration_minutes=payload.get("break_duration_minutes", 30),
        position_required=payload.get("position_required"),
        max_employees=payload.get("max_employees", 1),
        actor=_actor(payload),
    )
    return _respond(store.template_to_dict(template), status_code=201)


@app.put("/api/v1/shift-templates/{template_id}")
def update_shift_template(template_id: int, payload: Dict[str, Any], db: Session = Depends(get_db)) -> JSONResponse:
    changes = {key: value for key, value in payload.items() if key != "actor"}
    template = store.update_template(db, template_id, changes, actor=_actor(payload))
    return _respond(store.template_to_dict(template))


@app.get("/api/v1/shift-templates/{template_id}/usage")
def shift_template_usage(template_id: int, db: Session = Depends(get_db)) -> JSONResponse:
    return _respond(store.template_usage(db, template_id))


@app.delete("/api/v1/shift-templates/{template_id}")
def delete_shift_template(
    template_id: int,
    actor: str = Query("api"),
    db: Session = Depends(get_db),
    locks: WeekLockRegistry = Depends(get_week_locks),
) -> JSONResponse:
    usage = store.template_usage(db, template_id)
    week_starts = sorted({datetime.date.fromisoformat(row["week_start"]) for row in usage["weeks"]})
    # Weeks are always acquired in ascending order.
    with ExitStack() as stack:
        for week_start in week_starts:
            stack.enter_context(locks.hold(week_start))
        result = store.delete_template(db, template_id, actor=actor)
    return _respond(result)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@app.get("/api/v1/settings")
def get_settings(db: Session = Depends(get_db)) -> JSONResponse:
    record = get_active_settings(db)
    return _respond(
        {
            "name": record.name if record else None,
            "params": load_active_settings(db),
            "lastEditedBy": record.lastEditedBy if record else None,
            "lastEditedAt": record.lastEditedAt.isoformat() if record and record.lastEditedAt else None,
        }
    )


@app.put("/api/v1/settings")
def put_settings(payload: Dict[str, Any], db: Session = Depends(get_db)) -> JSONResponse:
    params = payload.get("params")
    if not isinstance(params, dict):
        raise HTTPException(status_code=400, detail="params object is required")
    merged = save_settings(db, params, edited_by=_actor(payload))
    return _respond({"params": merged})
