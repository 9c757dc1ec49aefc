"""Points computation for each points specification kind"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict

from homecare_billing.domain.exceptions import RuleConfigurationError
from homecare_billing.domain.models import EvaluationContext
from homecare_billing.domain.rules import (
    AgePoints,
    BuildingOccupancyPoints,
    DailyOrdinalPoints,
    DurationTierPoints,
    FixedPoints,
    MonthlyOrdinalPoints,
    TimeOfDayPoints,
)
from homecare_billing.utils.date_utils import duration_minutes, in_clock_range, to_billing_clock


@dataclass(frozen=True)
class PointsResult:
    points: int
    basis: str
    metadata: Dict[str, Any] = field(default_factory=dict)


def _fixed(spec: FixedPoints, ctx: EvaluationContext) -> PointsResult:
    return PointsResult(spec.points, "fixed_points")


def _time_of_day(spec: TimeOfDayPoints, ctx: EvaluationContext) -> PointsResult:
    moment = ctx.visit.actual_start if spec.reference == "start" else ctx.visit.actual_end
    if moment is None:
        return PointsResult(0, f"no_{spec.reference}_time")

    clock = to_billing_clock(moment, ctx.timezone).time()
    for bucket in spec.buckets:
        if in_clock_range(clock, bucket.start, bucket.end):
            return PointsResult(bucket.points, bucket.name, {"clock": clock.isoformat()})
    return PointsResult(spec.default_points, "outside_buckets", {"clock": clock.isoformat()})


def _duration_tiers(spec: DurationTierPoints, ctx: EvaluationContext) -> PointsResult:
    minutes = duration_minutes(ctx.visit.actual_start, ctx.visit.actual_end, ctx.timezone)
    if minutes is None:
        return PointsResult(0, "no_duration")

    for tier in sorted(spec.tiers, key=lambda t: t.min_minutes, reverse=True):
        matched = minutes > tier.min_minutes if spec.operator == "gt" else minutes >= tier.min_minutes
        if matched:
            return PointsResult(tier.points, f"duration_{tier.min_minutes}", {"duration_minutes": minutes})
    return PointsResult(spec.default_points, "below_threshold", {"duration_minutes": minutes})


def _monthly_ordinal(spec: MonthlyOrdinalPoints, ctx: EvaluationContext) -> PointsResult:
    flagged = [v.record_id for v in ctx.month_visits if v.flag(spec.flag)]
    if ctx.visit.record_id not in flagged:
        # The visit itself lacks the flag; count it after the flagged ones already seen
        ordinal = len(flagged) + 1
    else:
        ordinal = flagged.index(ctx.visit.record_id) + 1

    if ordinal <= spec.threshold:
        return PointsResult(spec.up_to_points, f"up_to_{spec.threshold}", {"ordinal": ordinal})
    return PointsResult(spec.after_points, f"after_{spec.threshold}", {"ordinal": ordinal})


def _daily_ordinal(spec: DailyOrdinalPoints, ctx: EvaluationContext) -> PointsResult:
    ordinal = ctx.daily_visit_ordinal
    if ordinal <= 1:
        return PointsResult(spec.first_points, "visit_1", {"ordinal": ordinal})
    if ordinal == 2:
        return PointsResult(spec.second_points, "visit_2", {"ordinal": ordinal})
    return PointsResult(spec.third_plus_points, "visit_3_plus", {"ordinal": ordinal})


def _building_occupancy(spec: BuildingOccupancyPoints, ctx: EvaluationContext) -> PointsResult:
    if ctx.patient.building_id is None:
        # No building on file: the patient lives alone as far as billing knows
        return PointsResult(spec.low_points, "no_building", {"occupancy": 1})

    occupancy = ctx.building_occupancy
    metadata = {"occupancy": occupancy, "building_id": str(ctx.patient.building_id)}
    if occupancy <= spec.max_low_occupancy:
        return PointsResult(spec.low_points, f"occupancy_up_to_{spec.max_low_occupancy}", metadata)
    return PointsResult(spec.high_points, f"occupancy_over_{spec.max_low_occupancy}", metadata)


def _age(spec: AgePoints, ctx: EvaluationContext) -> PointsResult:
    age = ctx.patient.age_on(ctx.visit.visit_date)
    if age is None:
        return PointsResult(0, "no_date_of_birth")

    for bracket in sorted(spec.brackets, key=lambda b: b.min_age):
        if bracket.min_age <= age and (bracket.max_age is None or age < bracket.max_age):
            upper = bracket.max_age if bracket.max_age is not None else "plus"
            return PointsResult(bracket.points, f"age_{bracket.min_age}_{upper}", {"age": age})
    return PointsResult(spec.default_points, "no_bracket", {"age": age})


POINTS_EVALUATORS: Dict[type, Callable[[Any, EvaluationContext], PointsResult]] = {
    FixedPoints: _fixed,
    TimeOfDayPoints: _time_of_day,
    DurationTierPoints: _duration_tiers,
    MonthlyOrdinalPoints: _monthly_ordinal,
    DailyOrdinalPoints: _daily_ordinal,
    BuildingOccupancyPoints: _building_occupancy,
    AgePoints: _age,
}


def compute_points(rule_code: str, spec: Any, ctx: EvaluationContext) -> PointsResult:
    """
    Compute a rule's points for a visit.

    Raises:
        RuleConfigurationError: points kind has no evaluator
    """
    evaluator = POINTS_EVALUATORS.get(type(spec))
    if evaluator is None:
        raise RuleConfigurationError(rule_code, f"no evaluator for points {type(spec).__name__}")
    return evaluator(spec, ctx)
