from __future__ import annotations

import datetime
import logging
from types import SimpleNamespace
from unittest import mock

import pytest
from sqlalchemy.exc import OperationalError

from conftest import WEEK_START, add_time_off
from rota.availability import UNREACHABLE_REASON, build_snapshot, load_availability

TUESDAY = WEEK_START + datetime.timedelta(days=1)


def test_time_off_ending_at_midnight_does_not_block_next_day(session) -> None:
    add_time_off(session, "alice", datetime.datetime(2024, 4, 1, 0, 0), datetime.datetime(2024, 4, 2, 0, 0))
    snapshot = load_availability(session, WEEK_START, WEEK_START + datetime.timedelta(days=6))

    assert snapshot.is_unavailable("alice", WEEK_START)
    assert not snapshot.is_unavailable("alice", TUESDAY)
    assert not snapshot.is_unavailable("bob", WEEK_START)


def test_partial_day_blocks_whole_date(session) -> None:
    add_time_off(session, "alice", datetime.datetime(2024, 4, 2, 14, 0), datetime.datetime(2024, 4, 2, 16, 0), reason="Dentist")
    snapshot = load_availability(session, WEEK_START, WEEK_START + datetime.timedelta(days=6))

    assert snapshot.is_unavailable("alice", TUESDAY)
    assert snapshot.conflict_reason("alice", TUESDAY) == "Dentist"
    morning = snapshot.free_fraction(
        "alice", datetime.datetime(2024, 4, 2, 9, 0), datetime.datetime(2024, 4, 2, 17, 0)
    )
    assert morning == pytest.approx(0.75)


def test_pending_and_rejected_requests_are_ignored(session) -> None:
    add_time_off(session, "alice", datetime.datetime(2024, 4, 3, 9, 0), datetime.datetime(2024, 4, 3, 17, 0), status="pending")
    add_time_off(session, "alice", datetime.datetime(2024, 4, 4, 9, 0), datetime.datetime(2024, 4, 4, 17, 0), status="rejected")
    snapshot = load_availability(session, WEEK_START, WEEK_START + datetime.timedelta(days=6))

    assert not snapshot.is_unavailable("alice", datetime.date(2024, 4, 3))
    assert not snapshot.is_unavailable("alice", datetime.date(2024, 4, 4))


def test_timezone_aware_records_are_compared_in_utc() -> None:
    plus_two = datetime.timezone(datetime.timedelta(hours=2))
    # 01:00+02:00 on Wednesday is 23:00 UTC on Tuesday.
    record = SimpleNamespace(
        id=7,
        user_uid="alice",
        start_time=datetime.datetime(2024, 4, 3, 1, 0, tzinfo=plus_two),
        end_time=datetime.datetime(2024, 4, 3, 1, 30, tzinfo=plus_two),
        reason="",
    )
    snapshot = build_snapshot([record], WEEK_START, WEEK_START + datetime.timedelta(days=6))

    assert snapshot.is_unavailable("alice", TUESDAY)
    assert not snapshot.is_unavailable("alice", datetime.date(2024, 4, 3))


def test_offset_time_off_is_stored_in_utc(session) -> None:
    plus_two = datetime.timezone(datetime.timedelta(hours=2))
    add_time_off(
        session,
        "alice",
        datetime.datetime(2024, 4, 3, 1, 0, tzinfo=plus_two),
        datetime.datetime(2024, 4, 3, 1, 30, tzinfo=plus_two),
    )

    snapshot = load_availability(session, WEEK_START, WEEK_START + datetime.timedelta(days=6))

    assert snapshot.is_unavailable("alice", TUESDAY)
    assert not snapshot.is_unavailable("alice", datetime.date(2024, 4, 3))


def test_dates_outside_loaded_range_raise(session) -> None:
    snapshot = load_availability(session, WEEK_START, WEEK_START)
    with pytest.raises(ValueError):
        snapshot.is_unavailable("alice", TUESDAY)


def test_unreachable_register_fails_closed(caplog) -> None:
    broken = mock.MagicMock()
    broken.scalars.side_effect = OperationalError("SELECT", {}, Exception("database is locked"))

    with caplog.at_level(logging.WARNING, logger="rota.availability"):
        snapshot = load_availability(broken, WEEK_START, WEEK_START + datetime.timedelta(days=6))

    assert snapshot.unreachable
    assert snapshot.is_unavailable("anyone", WEEK_START)
    assert snapshot.conflict_reason("anyone", WEEK_START) == UNREACHABLE_REASON
    broken.rollback.assert_called_once()
    assert "blocking all assignments" in caplog.text
