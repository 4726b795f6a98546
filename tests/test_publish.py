from __future__ import annotations

import datetime
from unittest import mock

import pytest
from sqlalchemy import select

from conftest import WEEK_START, add_employee, add_template, add_time_off
from rota import publish, store
from rota.database import AuditLog, ScheduledShift, find_week
from rota.errors import ConflictError, InvalidStateError, NotFoundError
from rota.time_source import CustomSource, TemplateSource

NEXT_WEEK = WEEK_START + datetime.timedelta(days=7)


@pytest.fixture()
def staffed(session):
    for uid in ("alice", "bob", "cara"):
        add_employee(session, uid)
    template = add_template(session, "Dinner", datetime.time(17, 0), 360)
    return session, template


def _assign_week(session, template, uids=("alice", "bob", "cara")):
    shifts = []
    for offset, uid in enumerate(uids):
        shifts.append(
            store.assign(session, uid, WEEK_START + datetime.timedelta(days=offset), TemplateSource(template.id), actor="manager")
        )
    return shifts


def test_publish_marks_every_shift(staffed) -> None:
    session, template = staffed
    _assign_week(session, template)

    result = publish.publish_week(session, WEEK_START, actor="manager")

    assert result["published_shifts"] == 3
    assert result["affected_employees"] == ["alice", "bob", "cara"]
    statuses = {shift.status for shift in session.scalars(select(ScheduledShift))}
    assert statuses == {"published"}
    assert publish.week_status(session, WEEK_START) == "published"
    assert session.scalars(select(AuditLog).where(AuditLog.action == "ROTA_PUBLISH")).one()


def test_publish_empty_week_is_invalid(staffed) -> None:
    session, _ = staffed
    assert publish.week_status(session, WEEK_START) == "empty"
    with pytest.raises(InvalidStateError):
        publish.publish_week(session, WEEK_START, actor="manager")


def test_publish_blocked_by_conflict_lists_shift(staffed) -> None:
    session, template = staffed
    shifts = _assign_week(session, template)
    # Approved after the shift was drafted.
    add_time_off(session, "bob", datetime.datetime(2024, 4, 2, 0, 0), datetime.datetime(2024, 4, 3, 0, 0))

    with pytest.raises(ConflictError) as excinfo:
        publish.publish_week(session, WEEK_START, actor="manager")

    assert [conflict["shift_id"] for conflict in excinfo.value.conflicts] == [shifts[1].id]
    assert {shift.status for shift in session.scalars(select(ScheduledShift))} == {"draft"}


def test_publish_failure_leaves_week_in_draft(staffed) -> None:
    session, template = staffed
    _assign_week(session, template)
    original = publish._mark_published
    calls = {"count": 0}

    def flaky(shift, actor, now):
        calls["count"] += 1
        if calls["count"] > 1:
            raise RuntimeError("disk full")
        original(shift, actor, now)

    with mock.patch("rota.publish._mark_published", side_effect=flaky):
        with pytest.raises(RuntimeError):
            publish.publish_week(session, WEEK_START, actor="manager")

    session.expire_all()
    assert {shift.status for shift in session.scalars(select(ScheduledShift))} == {"draft"}
    assert find_week(session, WEEK_START).status == "draft"
    assert session.scalars(select(AuditLog).where(AuditLog.action == "ROTA_PUBLISH")).first() is None


def test_reopen_is_idempotent(staffed) -> None:
    session, template = staffed
    _assign_week(session, template)
    publish.publish_week(session, WEEK_START, actor="manager")

    first = publish.reopen_week(session, WEEK_START, actor="manager")
    second = publish.reopen_week(session, WEEK_START, actor="manager")

    assert first["reopened"] is True
    assert first["shifts"] == 3
    assert second["reopened"] is False
    assert publish.week_status(session, WEEK_START) == "draft"


def test_copy_previous_week_skips_unavailable_and_existing(staffed) -> None:
    session, template = staffed
    add_employee(session, "dev")
    add_employee(session, "eli")
    for offset, uid in enumerate(("alice", "bob", "cara", "dev", "eli")):
        store.assign(session, uid, WEEK_START + datetime.timedelta(days=offset), TemplateSource(template.id), actor="manager")
    # bob is away on the target Tuesday and dev already works the target Thursday.
    add_time_off(session, "bob", datetime.datetime(2024, 4, 9, 0, 0), datetime.datetime(2024, 4, 10, 0, 0))
    store.assign(session, "dev", NEXT_WEEK + datetime.timedelta(days=3), CustomSource(datetime.time(9, 0), datetime.time(13, 0)), actor="manager")

    result = publish.copy_previous_week(session, NEXT_WEEK, actor="manager")

    assert result["copied"] == 3
    assert result["skipped"] == 2
    reasons = {row["user_uid"]: row["reason"] for row in result["skipped_shifts"]}
    assert reasons == {"bob": "unavailable", "dev": "existing_shift"}
    target = store.query_shifts(session, NEXT_WEEK, NEXT_WEEK + datetime.timedelta(days=6))
    assert sorted(shift.user_uid for shift in target) == ["alice", "cara", "dev", "eli"]
    assert all(shift.status == "draft" for shift in target)


def test_copy_with_overwrite_replaces_existing_shift(staffed) -> None:
    session, template = staffed
    store.assign(session, "alice", WEEK_START, TemplateSource(template.id), actor="manager")
    existing = store.assign(session, "alice", NEXT_WEEK, CustomSource(datetime.time(9, 0), datetime.time(12, 0)), actor="manager")

    result = publish.copy_previous_week(session, NEXT_WEEK, overwrite_conflicts=True, actor="manager")

    assert result["copied"] == 1
    assert result["overwritten"] == 1
    target = store.query_shifts(session, NEXT_WEEK, NEXT_WEEK + datetime.timedelta(days=6))
    assert [shift.shift_template_id for shift in target] == [template.id]
    assert all(shift.custom_start_time is None for shift in target)
    assert existing.id not in {shift.id for shift in target}


def test_copy_from_empty_week_not_found(staffed) -> None:
    session, _ = staffed
    with pytest.raises(NotFoundError):
        publish.copy_previous_week(session, NEXT_WEEK, actor="manager")


def test_removed_shift_ids_are_not_reused(staffed) -> None:
    session, template = staffed
    first = store.assign(session, "alice", NEXT_WEEK, TemplateSource(template.id), actor="manager")
    removed_id = first.id
    store.remove(session, removed_id, actor="manager")

    replacement = store.assign(session, "alice", NEXT_WEEK, TemplateSource(template.id), actor="manager")

    assert replacement.id > removed_id
    assert session.get(ScheduledShift, removed_id) is None
