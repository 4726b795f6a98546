from __future__ import annotations

import datetime
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ..availability import AvailabilitySnapshot
from ..errors import CapExceededError, ValidationError
from ..labor import hourly_rate, labor_percentage, round_money
from ..settings import PRIORITY_FACTOR_KEYS, SMART_ASSIGN_DEFAULTS, WEEKDAY_TOKENS


COST_EPSILON = 1e-9


@dataclass
class SlotDemand:
    day_index: int
    date: datetime.date
    slot_index: int
    template_id: int
    template_name: str
    start: datetime.datetime
    end: datetime.datetime
    position_required: Optional[str] = None
    critical: bool = False
    event_name: Optional[str] = None

    @property
    def duration_hours(self) -> float:
        return max(0.0, (self.end - self.start).total_seconds() / 3600)


@dataclass
class ProposedShift:
    user_uid: str
    date: datetime.date
    slot_index: int
    template_id: int
    template_name: str
    start: datetime.datetime
    end: datetime.datetime
    hours: float
    cost: float
    score: float
    critical: bool
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_uid": self.user_uid,
            "shift_date": self.date.isoformat(),
            "slot_index": self.slot_index,
            "shift_template_id": self.template_id,
            "template_name": self.template_name,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "hours": round(self.hours, 2),
            "cost": self.cost,
            "score": self.score,
            "critical": self.critical,
            "notes": self.notes,
        }


@dataclass
class UnassignedSlot:
    date: datetime.date
    slot_index: int
    template_id: int
    template_name: str
    critical: bool
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shift_date": self.date.isoformat(),
            "slot_index": self.slot_index,
            "shift_template_id": self.template_id,
            "template_name": self.template_name,
            "critical": self.critical,
            "reason": self.reason,
        }


@dataclass
class Proposal:
    week_start: datetime.date
    shifts: List[ProposedShift] = field(default_factory=list)
    unassigned_slots: List[UnassignedSlot] = field(default_factory=list)
    labor_cost: float = 0.0
    cost_cap_amount: float = 0.0
    projected_sales_total: float = 0.0
    cap_warning: Optional[CapExceededError] = None
    incomplete_rates: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    daily: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def assigned_shifts(self) -> int:
        return len(self.shifts)

    @property
    def labor_percentage(self) -> float:
        return labor_percentage(self.labor_cost, self.projected_sales_total)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "week_start": self.week_start.isoformat(),
            "assigned_shifts": self.assigned_shifts,
            "shifts": [shift.to_dict() for shift in self.shifts],
            "unassigned_slots": [slot.to_dict() for slot in self.unassigned_slots],
            "labor_cost": self.labor_cost,
            "cost_cap_amount": self.cost_cap_amount,
            "projected_sales_total": self.projected_sales_total,
            "labor_percentage": self.labor_percentage,
            "cap_warning": self.cap_warning.to_dict() if self.cap_warning else None,
            "incomplete_rates": list(self.incomplete_rates),
            "estimate_incomplete": bool(self.incomplete_rates),
            "warnings": list(self.warnings),
            "daily": list(self.daily),
        }


def normalize_weights(priority_factors: Optional[Dict[str, Any]]) -> Dict[str, float]:
    """Divide the factor weights by their sum; all-zero weights become equal weights."""
    raw = priority_factors if isinstance(priority_factors, dict) else {}
    weights: Dict[str, float] = {}
    for key in PRIORITY_FACTOR_KEYS:
        value = raw.get(key, 0.0)
        try:
            weight = float(value or 0.0)
        except (TypeError, ValueError):
            raise ValidationError(f"priority_factors.{key} must be a number.", field=f"priority_factors.{key}")
        if weight < 0 or weight != weight:
            raise ValidationError(f"priority_factors.{key} must be >= 0.", field=f"priority_factors.{key}")
        weights[key] = weight
    total = sum(weights.values())
    if total <= 0:
        return {key: 1.0 / len(PRIORITY_FACTOR_KEYS) for key in PRIORITY_FACTOR_KEYS}
    return {key: value / total for key, value in weights.items()}


class SmartAssignEngine:
    """Greedy weighted scoring over a week of template slots.

    Pure: everything it needs is passed in and it never touches a session, so
    identical inputs always produce an identical proposal.
    """

    def __init__(self, options: Optional[Dict[str, Any]] = None) -> None:
        options = options or {}
        self.sales_per_staff = self._positive(options.get("sales_per_staff"), SMART_ASSIGN_DEFAULTS["sales_per_staff"])
        self.event_sales_multiplier = self._positive(
            options.get("event_sales_multiplier"), SMART_ASSIGN_DEFAULTS["event_sales_multiplier"]
        )
        self.event_staffing_floor = max(
            1.0, self._positive(options.get("event_staffing_floor"), SMART_ASSIGN_DEFAULTS["event_staffing_floor"])
        )
        self.max_hours_week = self._positive(options.get("max_hours_week"), SMART_ASSIGN_DEFAULTS["max_hours_week"])
        mismatch = options.get("mismatch_experience_score", SMART_ASSIGN_DEFAULTS["mismatch_experience_score"])
        try:
            self.mismatch_experience_score = self._clamp(float(mismatch), 0.0, 1.0)
        except (TypeError, ValueError):
            self.mismatch_experience_score = SMART_ASSIGN_DEFAULTS["mismatch_experience_score"]
        self.default_sales_pattern: Dict[str, float] = dict(
            options.get("default_sales_pattern") or SMART_ASSIGN_DEFAULTS["default_sales_pattern"]
        )

    @staticmethod
    def _clamp(value: float, lower: float, upper: float) -> float:
        return max(lower, min(upper, value))

    @staticmethod
    def _positive(value: Any, default: float) -> float:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return float(default)
        return number if number > 0 else float(default)

    # ------------------------------------------------------------------
    # Demand
    # ------------------------------------------------------------------

    @staticmethod
    def _slot_cycle(templates: Sequence) -> List:
        """Templates by start time, repeated round-robin up to each one's max_employees."""
        ordered = sorted(templates, key=lambda template: (template.start_time, template.id))
        cycle = []
        rounds = max((max(1, int(template.max_employees or 1)) for template in ordered), default=0)
        for round_index in range(rounds):
            for template in ordered:
                if max(1, int(template.max_employees or 1)) > round_index:
                    cycle.append(template)
        return cycle

    def _event_for(self, events: Iterable, date_: datetime.date):
        matches = [event for event in events if event.event_date == date_]
        if not matches:
            return None
        return max(matches, key=lambda event: (float(event.sales_multiplier or 0.0), -int(event.id or 0)))

    def _base_sales(self, projected_sales: Dict[int, float], day_index: int) -> float:
        if day_index in projected_sales and projected_sales[day_index] is not None:
            return max(0.0, float(projected_sales[day_index]))
        return max(0.0, float(self.default_sales_pattern.get(WEEKDAY_TOKENS[day_index], 0.0)))

    def build_day_demand(
        self,
        week_start: datetime.date,
        day_index: int,
        cycle: Sequence,
        projected_sales: Dict[int, float],
        events: Iterable,
        consider_events: bool,
    ) -> Tuple[List[SlotDemand], Dict[str, Any]]:
        date_ = week_start + datetime.timedelta(days=day_index)
        base_sales = self._base_sales(projected_sales, day_index)
        event = self._event_for(events, date_) if consider_events else None
        predicted = base_sales
        if event is not None:
            multiplier = float(event.sales_multiplier or 0.0) or self.event_sales_multiplier
            predicted = base_sales * multiplier
        base_level = max(1, math.ceil(base_sales / self.sales_per_staff))
        level = max(1, math.ceil(predicted / self.sales_per_staff))
        if event is not None:
            level = max(level, math.ceil(base_level * self.event_staffing_floor))
        level = min(level, len(cycle))
        slots: List[SlotDemand] = []
        for slot_index in range(level):
            template = cycle[slot_index]
            start = datetime.datetime.combine(date_, template.start_time)
            end = start + datetime.timedelta(minutes=int(template.duration_minutes))
            critical = slot_index == 0 or (event is not None and slot_index >= base_level)
            slots.append(
                SlotDemand(
                    day_index=day_index,
                    date=date_,
                    slot_index=slot_index,
                    template_id=template.id,
                    template_name=template.name,
                    start=start,
                    end=end,
                    position_required=template.position_required,
                    critical=critical,
                    event_name=event.name if event is not None else None,
                )
            )
        summary = {
            "date": date_.isoformat(),
            "projected_sales": round(predicted, 2),
            "staffing_level": level,
            "event": event.name if event is not None else None,
        }
        return slots, summary

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def _tenure_days(self, employee, reference: datetime.date) -> int:
        hire_date = getattr(employee, "hire_date", None)
        if not hire_date:
            return 0
        return max(0, (reference - hire_date).days)

    def _score_candidate(
        self,
        employee,
        demand: SlotDemand,
        *,
        weights: Dict[str, float],
        availability: AvailabilitySnapshot,
        hours: Dict[str, float],
        rate_bounds: Tuple[Optional[float], Optional[float]],
        max_tenure: int,
        reference: datetime.date,
    ) -> float:
        availability_score = availability.free_fraction(employee.uid, demand.start, demand.end)
        rate = hourly_rate(employee.pay_rate)
        low, high = rate_bounds
        if rate is None or low is None or high is None:
            cost_score = 0.5
        elif high == low:
            cost_score = 1.0
        else:
            cost_score = (high - rate) / (high - low)
        if not demand.position_required:
            position_score = 1.0
        elif (employee.position or "").strip().lower() == demand.position_required.strip().lower():
            position_score = 1.0
        else:
            position_score = self.mismatch_experience_score
        tenure_score = self._tenure_days(employee, reference) / max_tenure if max_tenure > 0 else 0.0
        experience_score = 0.5 * position_score + 0.5 * tenure_score
        fairness_score = self._clamp(1.0 - hours.get(employee.uid, 0.0) / self.max_hours_week, 0.0, 1.0)
        score = (
            weights["availability"] * availability_score
            + weights["cost"] * self._clamp(cost_score, 0.0, 1.0)
            + weights["experience"] * self._clamp(experience_score, 0.0, 1.0)
            + weights["fairness"] * fairness_score
        )
        return round(score, 6)

    def _candidate_pool(
        self,
        employees: Sequence,
        demand: SlotDemand,
        availability: AvailabilitySnapshot,
        hours: Dict[str, float],
        assigned_today: set,
    ) -> List:
        pool = []
        for employee in employees:
            if employee.uid in assigned_today:
                continue
            if availability.is_unavailable(employee.uid, demand.date):
                continue
            if hours.get(employee.uid, 0.0) + demand.duration_hours > self.max_hours_week + COST_EPSILON:
                continue
            pool.append(employee)
        return pool

    def _pick(
        self,
        pool: Sequence,
        demand: SlotDemand,
        *,
        weights: Dict[str, float],
        availability: AvailabilitySnapshot,
        hours: Dict[str, float],
        reference: datetime.date,
    ) -> Tuple[Any, float]:
        rates = [rate for rate in (hourly_rate(employee.pay_rate) for employee in pool) if rate is not None]
        rate_bounds = (min(rates), max(rates)) if rates else (None, None)
        max_tenure = max((self._tenure_days(employee, reference) for employee in pool), default=0)
        ranked = []
        for employee in pool:
            score = self._score_candidate(
                employee,
                demand,
                weights=weights,
                availability=availability,
                hours=hours,
                rate_bounds=rate_bounds,
                max_tenure=max_tenure,
                reference=reference,
            )
            ranked.append((-score, hours.get(employee.uid, 0.0), employee.uid, employee))
        ranked.sort(key=lambda item: (item[0], item[1], item[2]))
        best = ranked[0]
        return best[3], -best[0]

    # ------------------------------------------------------------------
    # Proposal
    # ------------------------------------------------------------------

    def propose(
        self,
        week_start: datetime.date,
        employees: Sequence,
        templates: Sequence,
        availability: AvailabilitySnapshot,
        cost_cap_percent: float,
        priority_factors: Optional[Dict[str, Any]],
        events: Optional[Iterable] = None,
        *,
        consider_events: bool = False,
        projected_sales: Optional[Dict[int, float]] = None,
    ) -> Proposal:
        weights = normalize_weights(priority_factors)
        try:
            cap_percent = float(cost_cap_percent)
        except (TypeError, ValueError):
            raise ValidationError("cost_cap_percent must be a number.", field="max_labor_cost_percentage")
        if cap_percent < 0:
            raise ValidationError("cost_cap_percent must be >= 0.", field="max_labor_cost_percentage")
        event_rows = list(events or [])
        sales = dict(projected_sales or {})
        active = sorted(
            (employee for employee in employees if getattr(employee, "status", "active") == "active"),
            key=lambda employee: employee.uid,
        )
        proposal = Proposal(week_start=week_start)
        cycle = self._slot_cycle(templates)
        if not cycle:
            proposal.warnings.append("No shift templates are defined; nothing to assign.")
            return proposal
        if not active:
            proposal.warnings.append("No active employees are available to assign.")

        week_demand: List[Tuple[List[SlotDemand], Dict[str, Any]]] = []
        for day_index in range(7):
            week_demand.append(
                self.build_day_demand(week_start, day_index, cycle, sales, event_rows, consider_events)
            )
        proposal.projected_sales_total = round(sum(summary["projected_sales"] for _, summary in week_demand), 2)
        proposal.cost_cap_amount = round_money(proposal.projected_sales_total * cap_percent / 100.0)

        hours: Dict[str, float] = {}
        incomplete: set = set()
        running_cost = 0.0
        capped = False
        dropped_for_cap = 0

        for slots, summary in week_demand:
            assigned_today: set = set()
            day_picks: List[ProposedShift] = []
            for demand in slots:
                if capped and not demand.critical:
                    proposal.unassigned_slots.append(self._unassigned(demand, "cost_cap"))
                    dropped_for_cap += 1
                    continue
                pool = self._candidate_pool(active, demand, availability, hours, assigned_today)
                if not pool:
                    proposal.unassigned_slots.append(self._unassigned(demand, "no_candidates"))
                    continue
                employee, score = self._pick(
                    pool,
                    demand,
                    weights=weights,
                    availability=availability,
                    hours=hours,
                    reference=week_start,
                )
                rate = hourly_rate(employee.pay_rate)
                if rate is None:
                    incomplete.add(employee.uid)
                cost = round_money(demand.duration_hours * rate) if rate is not None else 0.0
                note = f"Smart assigned - Score: {score:.2f}"
                if demand.event_name:
                    note += " (Event day)"
                day_picks.append(
                    ProposedShift(
                        user_uid=employee.uid,
                        date=demand.date,
                        slot_index=demand.slot_index,
                        template_id=demand.template_id,
                        template_name=demand.template_name,
                        start=demand.start,
                        end=demand.end,
                        hours=demand.duration_hours,
                        cost=cost,
                        score=score,
                        critical=demand.critical,
                        notes=note,
                    )
                )
                assigned_today.add(employee.uid)
                hours[employee.uid] = hours.get(employee.uid, 0.0) + demand.duration_hours
                running_cost += cost

            if running_cost > proposal.cost_cap_amount + COST_EPSILON:
                capped = True
                drop_order = [pick for pick in reversed(day_picks) if not pick.critical]
                drop_order += [pick for pick in reversed(day_picks) if pick.critical]
                for pick in drop_order:
                    if running_cost <= proposal.cost_cap_amount + COST_EPSILON:
                        break
                    if pick.cost <= 0:
                        continue
                    day_picks.remove(pick)
                    running_cost -= pick.cost
                    hours[pick.user_uid] = hours.get(pick.user_uid, 0.0) - pick.hours
                    demand = next(slot for slot in slots if slot.slot_index == pick.slot_index)
                    proposal.unassigned_slots.append(self._unassigned(demand, "cost_cap"))
                    dropped_for_cap += 1
            proposal.shifts.extend(day_picks)
            summary["assigned"] = len(day_picks)
            summary["cost"] = round_money(sum(pick.cost for pick in day_picks))
            proposal.daily.append(summary)

        proposal.shifts.sort(key=lambda shift: (shift.date, shift.slot_index))
        proposal.unassigned_slots.sort(key=lambda slot: (slot.date, slot.slot_index))
        proposal.labor_cost = round_money(sum(shift.cost for shift in proposal.shifts))
        proposal.incomplete_rates = sorted(uid for uid in incomplete if any(s.user_uid == uid for s in proposal.shifts))
        if proposal.incomplete_rates:
            proposal.warnings.append(
                "Labor cost is an underestimate; missing pay rates for: " + ", ".join(proposal.incomplete_rates)
            )
        if dropped_for_cap:
            proposal.cap_warning = CapExceededError(
                f"Labor cost cap of {cap_percent:g}% reached; {dropped_for_cap} slot(s) left unassigned.",
                unassigned_slots=dropped_for_cap,
                cost_cap_amount=proposal.cost_cap_amount,
            )
        no_candidates = sum(1 for slot in proposal.unassigned_slots if slot.reason == "no_candidates")
        if no_candidates:
            proposal.warnings.append(f"{no_candidates} slot(s) had no available candidates.")
        return proposal

    @staticmethod
    def _unassigned(demand: SlotDemand, reason: str) -> UnassignedSlot:
        return UnassignedSlot(
            date=demand.date,
            slot_index=demand.slot_index,
            template_id=demand.template_id,
            template_name=demand.template_name,
            critical=demand.critical,
            reason=reason,
        )


def propose_week(
    week_start: datetime.date,
    employees: Sequence,
    templates: Sequence,
    availability: AvailabilitySnapshot,
    cost_cap_percent: float,
    priority_factors: Optional[Dict[str, Any]],
    events: Optional[Iterable] = None,
    *,
    consider_events: bool = False,
    projected_sales: Optional[Dict[int, float]] = None,
    options: Optional[Dict[str, Any]] = None,
) -> Proposal:
    engine = SmartAssignEngine(options)
    return engine.propose(
        week_start,
        employees,
        templates,
        availability,
        cost_cap_percent,
        priority_factors,
        events,
        consider_events=consider_events,
        projected_sales=projected_sales,
    )
