from __future__ import annotations

import datetime
import gc
import threading
import time

from rota.locks import WeekLockRegistry

MONDAY = datetime.date(2024, 4, 1)
WEDNESDAY = datetime.date(2024, 4, 3)


def test_dates_in_same_week_share_one_lock() -> None:
    registry = WeekLockRegistry()
    order = []

    def contender() -> None:
        with registry.hold(MONDAY):
            order.append("thread")

    with registry.hold(WEDNESDAY) as key:
        assert key == MONDAY
        worker = threading.Thread(target=contender)
        worker.start()
        time.sleep(0.05)
        order.append("main")
    worker.join(timeout=2)

    assert order == ["main", "thread"]


def test_different_weeks_do_not_block() -> None:
    registry = WeekLockRegistry()
    entered = threading.Event()

    def other_week() -> None:
        with registry.hold(MONDAY + datetime.timedelta(days=7)):
            entered.set()

    with registry.hold(MONDAY):
        worker = threading.Thread(target=other_week)
        worker.start()
        assert entered.wait(timeout=2)
    worker.join(timeout=2)


def test_hold_is_reentrant_and_released() -> None:
    registry = WeekLockRegistry()
    with registry.hold(MONDAY):
        with registry.hold(WEDNESDAY):
            assert len(registry) == 1
    gc.collect()
    assert len(registry) == 0
