from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

from .errors import InvalidStateError, ValidationError


MINUTES_PER_DAY = 24 * 60


@dataclass(frozen=True)
class TemplateSource:
    template_id: int
    start: Optional[datetime.time] = None
    duration_minutes: Optional[int] = None

    @classmethod
    def from_template(cls, template) -> "TemplateSource":
        return cls(template_id=template.id, start=template.start_time, duration_minutes=template.duration_minutes)


@dataclass(frozen=True)
class CustomSource:
    start: datetime.time
    end: datetime.time


@dataclass(frozen=True)
class ActualOverride:
    start: datetime.time
    end: datetime.time


ShiftTimeSource = Union[TemplateSource, CustomSource, ActualOverride]


def _minute_of_day(value: datetime.time) -> int:
    return value.hour * 60 + value.minute


def _span_minutes(start: datetime.time, end: datetime.time) -> int:
    start_min = _minute_of_day(start)
    end_min = _minute_of_day(end)
    if end_min < start_min:
        end_min += MINUTES_PER_DAY
    return end_min - start_min


def source_minutes(source: ShiftTimeSource) -> int:
    """Duration of ``source`` in minutes; end before start rolls over one day."""
    if isinstance(source, TemplateSource):
        minutes = int(source.duration_minutes or 0)
    elif isinstance(source, (CustomSource, ActualOverride)):
        minutes = _span_minutes(source.start, source.end)
    else:
        raise TypeError(f"Unsupported shift time source: {type(source).__name__}")
    if minutes <= 0:
        raise InvalidStateError("Shift time source resolves to a zero or negative duration.")
    return minutes


def source_start(source: ShiftTimeSource) -> datetime.time:
    if isinstance(source, TemplateSource):
        if source.start is None:
            raise InvalidStateError(f"Template {source.template_id} has no start time loaded.")
        return source.start
    return source.start


def span_for(source: ShiftTimeSource, shift_date: datetime.date) -> Tuple[datetime.datetime, datetime.datetime]:
    """Concrete ``[start, end)`` datetimes for a shift on ``shift_date``."""
    start_dt = datetime.datetime.combine(shift_date, source_start(source))
    return start_dt, start_dt + datetime.timedelta(minutes=source_minutes(source))


def resolve_time_source(shift, template=None) -> ShiftTimeSource:
    """Pick the shift's time source: custom pair, then actual pair, then template."""
    custom = (shift.custom_start_time, shift.custom_end_time)
    actual = (shift.actual_start_time, shift.actual_end_time)
    if (custom[0] is None) != (custom[1] is None):
        raise InvalidStateError(f"Shift {shift.id} stores half a custom time pair.", shift_id=shift.id)
    if (actual[0] is None) != (actual[1] is None):
        raise InvalidStateError(f"Shift {shift.id} stores half an actual time pair.", shift_id=shift.id)
    if custom[0] is not None:
        return CustomSource(start=custom[0], end=custom[1])
    if actual[0] is not None:
        return ActualOverride(start=actual[0], end=actual[1])
    if template is None and shift.shift_template_id is not None:
        template = shift.template
    if template is not None:
        return TemplateSource.from_template(template)
    raise InvalidStateError(f"Shift {shift.id} has no resolvable time source.", shift_id=shift.id)


def parse_time_value(value: Any, field: str) -> Optional[datetime.time]:
    """Accept ``time`` objects or ``HH:MM[:SS]`` strings."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime.datetime):
        return value.time().replace(second=0, microsecond=0)
    if isinstance(value, datetime.time):
        return value
    if isinstance(value, str):
        try:
            return datetime.time.fromisoformat(value.strip())
        except ValueError:
            pass
    raise ValidationError(f"{field} must be a time of day (HH:MM).", field=field)


def validate_time_fields(
    template_id: Optional[int],
    custom_start: Optional[datetime.time],
    custom_end: Optional[datetime.time],
    actual_start: Optional[datetime.time] = None,
    actual_end: Optional[datetime.time] = None,
) -> None:
    has_custom = custom_start is not None or custom_end is not None
    if template_id is not None and has_custom:
        raise ValidationError("Provide either a shift template or custom times, not both.", field="shift_template_id")
    if (custom_start is None) != (custom_end is None):
        raise ValidationError("Custom start and end times must be provided together.", field="custom_start_time")
    if (actual_start is None) != (actual_end is None):
        raise ValidationError("Actual start and end times must be provided together.", field="actual_start_time")
    if template_id is None and not has_custom:
        raise ValidationError("Either a shift template or custom times are required.", field="shift_template_id")
    if custom_start is not None and custom_start == custom_end:
        raise ValidationError("Custom start and end times cannot be equal.", field="custom_end_time")
    if actual_start is not None and actual_start == actual_end:
        raise ValidationError("Actual start and end times cannot be equal.", field="actual_end_time")


def source_from_payload(payload: Dict[str, Any]) -> ShiftTimeSource:
    """Build a template or custom source from a request body."""
    template_id = payload.get("shift_template_id")
    custom_start = parse_time_value(payload.get("custom_start_time"), "custom_start_time")
    custom_end = parse_time_value(payload.get("custom_end_time"), "custom_end_time")
    if template_id is not None:
        try:
            template_id = int(template_id)
        except (TypeError, ValueError):
            raise ValidationError("shift_template_id must be an integer.", field="shift_template_id")
    validate_time_fields(template_id, custom_start, custom_end)
    if template_id is not None:
        return TemplateSource(template_id=template_id)
    return CustomSource(start=custom_start, end=custom_end)


def describe_source(source: ShiftTimeSource) -> Dict[str, Any]:
    kind = {
        TemplateSource: "template",
        CustomSource: "custom",
        ActualOverride: "actual",
    }[type(source)]
    payload: Dict[str, Any] = {"source": kind}
    if isinstance(source, TemplateSource):
        payload["template_id"] = source.template_id
    return payload
