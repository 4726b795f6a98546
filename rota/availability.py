from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from .database import as_naive_utc, list_approved


logger = logging.getLogger(__name__)

UNREACHABLE_REASON = "availability register unavailable"


@dataclass(frozen=True)
class BlockedInterval:
    record_id: Optional[int]
    user_uid: str
    start: datetime.datetime
    end: datetime.datetime
    reason: str = ""

    def overlaps(self, start: datetime.datetime, end: datetime.datetime) -> bool:
        return self.start < end and self.end > start

    def to_dict(self) -> Dict[str, object]:
        return {
            "availability_id": self.record_id,
            "user_uid": self.user_uid,
            "start_time": self.start.isoformat(),
            "end_time": self.end.isoformat(),
            "reason": self.reason,
        }


def _day_window(date_: datetime.date) -> Tuple[datetime.datetime, datetime.datetime]:
    start = datetime.datetime.combine(date_, datetime.time.min)
    return start, start + datetime.timedelta(days=1)


@dataclass(frozen=True)
class AvailabilitySnapshot:
    """Approved time-off for one calendar range, read once per request.

    In ``unreachable`` mode every employee is reported unavailable so a
    register outage never lets a conflicting shift through.
    """

    range_start: datetime.date
    range_end: datetime.date
    intervals: Dict[str, Tuple[BlockedInterval, ...]] = field(default_factory=dict)
    unreachable: bool = False

    def _check_range(self, date_: datetime.date) -> None:
        if not self.range_start <= date_ <= self.range_end:
            raise ValueError(
                f"{date_.isoformat()} is outside the loaded availability range "
                f"{self.range_start.isoformat()}..{self.range_end.isoformat()}."
            )

    def blocking_records(self, user_uid: str, date_: datetime.date) -> List[BlockedInterval]:
        self._check_range(date_)
        if self.unreachable:
            start, end = _day_window(date_)
            return [BlockedInterval(None, user_uid, start, end, UNREACHABLE_REASON)]
        start, end = _day_window(date_)
        return [interval for interval in self.intervals.get(user_uid, ()) if interval.overlaps(start, end)]

    def is_unavailable(self, user_uid: str, date_: datetime.date) -> bool:
        return bool(self.blocking_records(user_uid, date_))

    def conflict_reason(self, user_uid: str, date_: datetime.date) -> Optional[str]:
        records = self.blocking_records(user_uid, date_)
        if not records:
            return None
        if self.unreachable:
            return UNREACHABLE_REASON
        reasons = [record.reason for record in records if record.reason]
        return "; ".join(reasons) or "approved time off"

    def free_fraction(self, user_uid: str, start: datetime.datetime, end: datetime.datetime) -> float:
        """Share of ``[start, end)`` not covered by approved time-off."""
        total = (end - start).total_seconds()
        if total <= 0:
            return 0.0
        if self.unreachable:
            return 0.0
        covered: List[Tuple[datetime.datetime, datetime.datetime]] = []
        for interval in self.intervals.get(user_uid, ()):
            if not interval.overlaps(start, end):
                continue
            covered.append((max(interval.start, start), min(interval.end, end)))
        covered.sort()
        blocked = 0.0
        cursor = start
        for seg_start, seg_end in covered:
            seg_start = max(seg_start, cursor)
            if seg_end > seg_start:
                blocked += (seg_end - seg_start).total_seconds()
                cursor = seg_end
        return max(0.0, min(1.0, 1.0 - blocked / total))

    def conflict_detail(self, user_uid: str, date_: datetime.date, shift_id: Optional[int] = None) -> Dict[str, object]:
        detail: Dict[str, object] = {
            "user_uid": user_uid,
            "date": date_.isoformat(),
            "reason": self.conflict_reason(user_uid, date_),
            "blocking": [record.to_dict() for record in self.blocking_records(user_uid, date_)],
        }
        if shift_id is not None:
            detail["shift_id"] = shift_id
        return detail


def build_snapshot(records, range_start: datetime.date, range_end: datetime.date) -> AvailabilitySnapshot:
    grouped: Dict[str, List[BlockedInterval]] = {}
    for record in records:
        start = as_naive_utc(record.start_time)
        end = as_naive_utc(record.end_time)
        if end <= start:
            continue
        grouped.setdefault(record.user_uid, []).append(
            BlockedInterval(record.id, record.user_uid, start, end, record.reason or "")
        )
    intervals = {uid: tuple(sorted(items, key=lambda item: (item.start, item.end))) for uid, items in grouped.items()}
    return AvailabilitySnapshot(range_start=range_start, range_end=range_end, intervals=intervals)


def unreachable_snapshot(range_start: datetime.date, range_end: datetime.date) -> AvailabilitySnapshot:
    return AvailabilitySnapshot(range_start=range_start, range_end=range_end, unreachable=True)


def load_availability(session, range_start: datetime.date, range_end: datetime.date) -> AvailabilitySnapshot:
    """Read approved time-off for the inclusive range; fail closed on errors."""
    if range_end < range_start:
        range_start, range_end = range_end, range_start
    try:
        records = list_approved(session, range_start, range_end)
    except SQLAlchemyError:
        logger.warning(
            "Availability register could not be read for %s..%s; blocking all assignments.",
            range_start,
            range_end,
            exc_info=True,
        )
        session.rollback()
        return unreachable_snapshot(range_start, range_end)
    return build_snapshot(records, range_start, range_end)
