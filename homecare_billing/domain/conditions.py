"""Condition evaluators - one function per condition kind"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict

from homecare_billing.domain.exceptions import RuleConfigurationError
from homecare_billing.domain.models import EvaluationContext
from homecare_billing.domain.rules import (
    AgeCondition,
    DateRangeCondition,
    DeathPlaceCondition,
    DurationCondition,
    FacilityCapabilityCondition,
    FirstRecordOfMonthCondition,
    HasBuildingCondition,
    RollingWindowCountCondition,
    TimeOfDayCondition,
    VisitFlagCondition,
)
from homecare_billing.utils.date_utils import duration_minutes, in_clock_range, to_billing_clock


@dataclass(frozen=True)
class ConditionResult:
    passed: bool
    reason: str
    metadata: Dict[str, Any] = field(default_factory=dict)


def _date_range(condition: DateRangeCondition, ctx: EvaluationContext) -> ConditionResult:
    day = ctx.visit.visit_date
    windows = [
        w for w in ctx.patient.special_management
        if (condition.category is None or w.category == condition.category)
        and (condition.tier is None or w.tier == condition.tier)
    ]
    if not windows:
        return ConditionResult(False, "no matching special management window")

    for window in windows:
        if window.covers(day):
            return ConditionResult(
                True,
                f"{day} within {window.category} window from {window.start}",
                {"category": window.category, "start": window.start.isoformat(),
                 "end": window.end.isoformat() if window.end else None},
            )
    return ConditionResult(False, f"{day} outside every special management window")


def _rolling_window_count(condition: RollingWindowCountCondition, ctx: EvaluationContext) -> ConditionResult:
    anchor = ctx.patient.death_date
    if anchor is None:
        return ConditionResult(False, "patient death date not set")

    if condition.require_visit_on_anchor and ctx.visit.visit_date != anchor:
        return ConditionResult(False, f"visit date {ctx.visit.visit_date} is not the death date {anchor}")

    window_start = anchor - timedelta(days=condition.window_days)
    qualifying = [
        v for v in ctx.patient_history
        if v.patient_id == ctx.visit.patient_id
        and window_start <= v.visit_date <= anchor
        and v.flag(condition.flag)
    ]
    count = len(qualifying)
    metadata = {
        "window_start": window_start.isoformat(),
        "window_end": anchor.isoformat(),
        "count": count,
        "required": condition.min_count,
    }
    if count < condition.min_count:
        return ConditionResult(False, f"{count} qualifying visits in window, {condition.min_count} required", metadata)
    return ConditionResult(True, f"{count} qualifying visits between {window_start} and {anchor}", metadata)


def _duration(condition: DurationCondition, ctx: EvaluationContext) -> ConditionResult:
    minutes = duration_minutes(ctx.visit.actual_start, ctx.visit.actual_end, ctx.timezone)
    if minutes is None:
        return ConditionResult(False, "visit start/end time not recorded")

    passed = minutes > condition.minutes if condition.operator == "gt" else minutes >= condition.minutes
    symbol = ">" if condition.operator == "gt" else ">="
    return ConditionResult(
        passed,
        f"visit duration {minutes}min {'' if passed else 'not '}{symbol} {condition.minutes}min",
        {"duration_minutes": minutes},
    )


def _time_of_day(condition: TimeOfDayCondition, ctx: EvaluationContext) -> ConditionResult:
    moments = []
    if condition.reference in ("start", "either") and ctx.visit.actual_start is not None:
        moments.append(("start", to_billing_clock(ctx.visit.actual_start, ctx.timezone).time()))
    if condition.reference in ("end", "either") and ctx.visit.actual_end is not None:
        moments.append(("end", to_billing_clock(ctx.visit.actual_end, ctx.timezone).time()))
    if not moments:
        return ConditionResult(False, f"visit {condition.reference} time not recorded")

    bucket = f"{condition.start:%H:%M}-{condition.end:%H:%M}"
    for label, moment in moments:
        if in_clock_range(moment, condition.start, condition.end):
            return ConditionResult(True, f"{label} time {moment:%H:%M} within {bucket}", {label: moment.isoformat()})
    return ConditionResult(False, f"visit time outside {bucket}")


def _first_record_of_month(condition: FirstRecordOfMonthCondition, ctx: EvaluationContext) -> ConditionResult:
    if ctx.is_first_record_of_month:
        return ConditionResult(True, "first billable record of the month")
    return ConditionResult(False, "not the first billable record of the month")


def _facility_capability(condition: FacilityCapabilityCondition, ctx: EvaluationContext) -> ConditionResult:
    passed = condition.capability in ctx.facility.capabilities
    return ConditionResult(passed, f"facility capability {condition.capability} {'enabled' if passed else 'disabled'}")


def _visit_flag(condition: VisitFlagCondition, ctx: EvaluationContext) -> ConditionResult:
    value = ctx.visit.flag(condition.flag)
    return ConditionResult(value == condition.expected, f"{condition.flag} is {value}")


def _death_place(condition: DeathPlaceCondition, ctx: EvaluationContext) -> ConditionResult:
    code = ctx.patient.death_place_code
    if code is None:
        return ConditionResult(False, "death place not recorded")
    passed = code in condition.codes
    return ConditionResult(passed, f"death place {code} {'in' if passed else 'not in'} {list(condition.codes)}")


def _age(condition: AgeCondition, ctx: EvaluationContext) -> ConditionResult:
    age = ctx.patient.age_on(ctx.visit.visit_date)
    if age is None:
        return ConditionResult(False, "patient date of birth not recorded")

    passed = age < condition.years if condition.operator == "lt" else age >= condition.years
    symbol = "<" if condition.operator == "lt" else ">="
    return ConditionResult(
        passed,
        f"patient age {age} {'' if passed else 'not '}{symbol} {condition.years}",
        {"age": age},
    )


def _has_building(condition: HasBuildingCondition, ctx: EvaluationContext) -> ConditionResult:
    has_building = ctx.patient.building_id is not None
    return ConditionResult(
        has_building == condition.expected,
        "patient has a building registered" if has_building else "patient has no building registered",
    )


CONDITION_EVALUATORS: Dict[type, Callable[[Any, EvaluationContext], ConditionResult]] = {
    DateRangeCondition: _date_range,
    RollingWindowCountCondition: _rolling_window_count,
    DurationCondition: _duration,
    TimeOfDayCondition: _time_of_day,
    FirstRecordOfMonthCondition: _first_record_of_month,
    FacilityCapabilityCondition: _facility_capability,
    VisitFlagCondition: _visit_flag,
    DeathPlaceCondition: _death_place,
    AgeCondition: _age,
    HasBuildingCondition: _has_building,
}


def evaluate_condition(rule_code: str, condition: Any, ctx: EvaluationContext) -> ConditionResult:
    """
    Evaluate one condition against a visit context.

    Raises:
        RuleConfigurationError: condition kind has no evaluator
    """
    evaluator = CONDITION_EVALUATORS.get(type(condition))
    if evaluator is None:
        raise RuleConfigurationError(rule_code, f"no evaluator for condition {type(condition).__name__}")
    return evaluator(condition, ctx)
