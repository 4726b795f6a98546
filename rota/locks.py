from __future__ import annotations

import datetime
import threading
import weakref
from contextlib import contextmanager
from typing import Iterator

from .database import normalize_week_start


class _WeekLock:
    """Holder object so the registry can reference the lock weakly."""

    __slots__ = ("lock", "__weakref__")

    def __init__(self) -> None:
        self.lock = threading.RLock()


class WeekLockRegistry:
    """Serializes mutations of one rota week inside a process.

    Entries are weak: a week's lock disappears once no caller holds it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: "weakref.WeakValueDictionary[datetime.date, _WeekLock]" = weakref.WeakValueDictionary()

    def _lock_for(self, week_start: datetime.date) -> _WeekLock:
        key = normalize_week_start(week_start)
        with self._guard:
            holder = self._locks.get(key)
            if holder is None:
                holder = _WeekLock()
                self._locks[key] = holder
            return holder

    @contextmanager
    def hold(self, week_start: datetime.date) -> Iterator[datetime.date]:
        holder = self._lock_for(week_start)
        with holder.lock:
            yield normalize_week_start(week_start)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
