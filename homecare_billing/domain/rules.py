"""
Bonus rule definitions.

Condition checks and points specifications are closed sets of kinds, each a
pydantic model tagged by its ``kind`` field. Rule rows store them as JSON and
they are parsed here once per catalog load; an unknown kind or a bad field
raises RuleConfigurationError for that rule alone.
"""

from dataclasses import dataclass
from datetime import date, time
from typing import Annotated, Any, List, Literal, Optional, Tuple, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from homecare_billing.domain.exceptions import RuleConfigurationError
from homecare_billing.domain.models import CATEGORIES, INSURANCE_TYPES

VisitFlag = Literal["is_terminal_care", "is_discharge_date", "is_emergency", "is_first_visit_of_plan"]
Comparison = Literal["gt", "gte"]


class _Spec(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# ========== Conditions ==========


class DateRangeCondition(_Spec):
    """Visit date inside one of the patient's special management windows"""

    kind: Literal["date_range"] = "date_range"
    attribute: Literal["special_management"] = "special_management"
    category: Optional[str] = None
    tier: Optional[str] = None


class RollingWindowCountCondition(_Spec):
    """Enough flagged visits in the trailing window ending at the death date"""

    kind: Literal["rolling_window_count"] = "rolling_window_count"
    flag: VisitFlag = "is_terminal_care"
    window_days: int = Field(14, ge=0)
    min_count: int = Field(2, ge=1)
    anchor: Literal["death_date"] = "death_date"
    require_visit_on_anchor: bool = True


class DurationCondition(_Spec):
    kind: Literal["duration"] = "duration"
    minutes: int = Field(..., ge=0)
    operator: Comparison = "gt"


class TimeOfDayCondition(_Spec):
    kind: Literal["time_of_day"] = "time_of_day"
    start: time
    end: time
    reference: Literal["start", "end", "either"] = "start"


class FirstRecordOfMonthCondition(_Spec):
    kind: Literal["first_record_of_month"] = "first_record_of_month"


class FacilityCapabilityCondition(_Spec):
    kind: Literal["facility_capability"] = "facility_capability"
    capability: str = Field(..., min_length=1)


class VisitFlagCondition(_Spec):
    kind: Literal["visit_flag"] = "visit_flag"
    flag: VisitFlag
    expected: bool = True


class DeathPlaceCondition(_Spec):
    kind: Literal["death_place"] = "death_place"
    codes: Tuple[str, ...] = Field(..., min_length=1)


class AgeCondition(_Spec):
    """Patient age on the visit date compared with ``years``"""

    kind: Literal["age"] = "age"
    years: int = Field(..., ge=0)
    operator: Literal["lt", "gte"] = "lt"


class HasBuildingCondition(_Spec):
    kind: Literal["has_building"] = "has_building"
    expected: bool = True


Condition = Annotated[
    Union[
        DateRangeCondition,
        RollingWindowCountCondition,
        DurationCondition,
        TimeOfDayCondition,
        FirstRecordOfMonthCondition,
        FacilityCapabilityCondition,
        VisitFlagCondition,
        DeathPlaceCondition,
        AgeCondition,
        HasBuildingCondition,
    ],
    Field(discriminator="kind"),
]


# ========== Points specifications ==========


class FixedPoints(_Spec):
    kind: Literal["fixed"] = "fixed"
    points: int


class TimeBucket(_Spec):
    name: str
    start: time
    end: time
    points: int


class TimeOfDayPoints(_Spec):
    """Value by the clock bucket the visit start (or end) falls in"""

    kind: Literal["time_of_day"] = "time_of_day"
    buckets: Tuple[TimeBucket, ...] = Field(..., min_length=1)
    reference: Literal["start", "end"] = "start"
    default_points: int = 0


class DurationTier(_Spec):
    min_minutes: int = Field(..., ge=0)
    points: int


class DurationTierPoints(_Spec):
    """Value by visit length; the longest matching tier wins"""

    kind: Literal["duration_tiers"] = "duration_tiers"
    tiers: Tuple[DurationTier, ...] = Field(..., min_length=1)
    operator: Comparison = "gte"
    default_points: int = 0


class MonthlyOrdinalPoints(_Spec):
    """Value by position among the month's flagged visits, e.g. up to the 14th emergency visit"""

    kind: Literal["monthly_ordinal"] = "monthly_ordinal"
    flag: VisitFlag = "is_emergency"
    threshold: int = Field(14, ge=1)
    up_to_points: int
    after_points: int


class DailyOrdinalPoints(_Spec):
    """Value by position among the same day's visits"""

    kind: Literal["daily_ordinal"] = "daily_ordinal"
    first_points: int = 0
    second_points: int
    third_plus_points: int


class BuildingOccupancyPoints(_Spec):
    """Value by how many patients of the same building the facility visits that day"""

    kind: Literal["building_occupancy"] = "building_occupancy"
    max_low_occupancy: int = Field(2, ge=1)
    low_points: int
    high_points: int


class AgeBracket(_Spec):
    min_age: int = Field(..., ge=0)
    max_age: Optional[int] = Field(None, ge=1)  # exclusive
    points: int


class AgePoints(_Spec):
    """Value by the bracket the patient's age on the visit date falls in"""

    kind: Literal["age"] = "age"
    brackets: Tuple[AgeBracket, ...] = Field(..., min_length=1)
    default_points: int = 0


PointsSpec = Annotated[
    Union[
        FixedPoints,
        TimeOfDayPoints,
        DurationTierPoints,
        MonthlyOrdinalPoints,
        DailyOrdinalPoints,
        BuildingOccupancyPoints,
        AgePoints,
    ],
    Field(discriminator="kind"),
]

CONDITION_KINDS = (
    DateRangeCondition,
    RollingWindowCountCondition,
    DurationCondition,
    TimeOfDayCondition,
    FirstRecordOfMonthCondition,
    FacilityCapabilityCondition,
    VisitFlagCondition,
    DeathPlaceCondition,
    AgeCondition,
    HasBuildingCondition,
)
POINTS_KINDS = (
    FixedPoints,
    TimeOfDayPoints,
    DurationTierPoints,
    MonthlyOrdinalPoints,
    DailyOrdinalPoints,
    BuildingOccupancyPoints,
    AgePoints,
)

_conditions_adapter = TypeAdapter(List[Condition])
_points_adapter = TypeAdapter(PointsSpec)


@dataclass(frozen=True)
class BonusRuleDefinition:
    """Parsed, immutable bonus rule as seen by the evaluator"""

    rule_id: UUID
    code: str
    name: str
    version: int
    category: str
    insurance_type: str
    valid_from: date
    points: Any  # one of POINTS_KINDS
    conditions: Tuple[Any, ...] = ()  # members of CONDITION_KINDS
    facility_id: Optional[UUID] = None
    valid_to: Optional[date] = None
    monthly_limit: Optional[int] = None
    display_order: int = 999
    cannot_combine_with: Tuple[str, ...] = ()

    def is_valid_on(self, day: date) -> bool:
        return self.valid_from <= day and (self.valid_to is None or day <= self.valid_to)

    def covers_facility(self, facility_id: UUID) -> bool:
        return self.facility_id is None or self.facility_id == facility_id


@dataclass(frozen=True)
class VisitRateDefinition:
    """Base per-visit points for an insurance type"""

    rate_id: UUID
    insurance_type: str
    valid_from: date
    points: int
    facility_id: Optional[UUID] = None
    valid_to: Optional[date] = None

    def is_valid_on(self, day: date) -> bool:
        return self.valid_from <= day and (self.valid_to is None or day <= self.valid_to)


def parse_conditions(rule_code: str, raw: Any) -> Tuple[Any, ...]:
    """Parse stored condition JSON; a single object is accepted as a one-item list"""
    if raw is None:
        return ()
    if isinstance(raw, dict):
        raw = [raw]
    try:
        return tuple(_conditions_adapter.validate_python(raw))
    except ValidationError as e:
        raise RuleConfigurationError(rule_code, f"invalid conditions: {e.errors(include_url=False)}") from e


def parse_points(rule_code: str, raw: Any) -> Any:
    if raw is None:
        raise RuleConfigurationError(rule_code, "points specification missing")
    try:
        return _points_adapter.validate_python(raw)
    except ValidationError as e:
        raise RuleConfigurationError(rule_code, f"invalid points specification: {e.errors(include_url=False)}") from e


def build_rule_definition(
    *,
    rule_id: UUID,
    code: str,
    name: str,
    version: int,
    category: str,
    insurance_type: str,
    valid_from: date,
    points: Any,
    conditions: Any = None,
    facility_id: Optional[UUID] = None,
    valid_to: Optional[date] = None,
    monthly_limit: Optional[int] = None,
    display_order: Optional[int] = None,
    cannot_combine_with: Optional[List[str]] = None,
) -> BonusRuleDefinition:
    """
    Validate raw rule data into a BonusRuleDefinition.

    Raises:
        RuleConfigurationError: scope, window, limit, condition or points data inconsistent
    """
    if insurance_type not in INSURANCE_TYPES:
        raise RuleConfigurationError(code, f"unknown insurance type {insurance_type!r}")
    if category not in CATEGORIES:
        raise RuleConfigurationError(code, f"unknown category {category!r}")
    if valid_to is not None and valid_to < valid_from:
        raise RuleConfigurationError(code, "valid_to precedes valid_from")
    if monthly_limit is not None and monthly_limit < 1:
        raise RuleConfigurationError(code, "monthly limit must be at least 1")

    return BonusRuleDefinition(
        rule_id=rule_id,
        code=code,
        name=name,
        version=version,
        category=category,
        insurance_type=insurance_type,
        valid_from=valid_from,
        valid_to=valid_to,
        facility_id=facility_id,
        points=parse_points(code, points),
        conditions=parse_conditions(code, conditions),
        monthly_limit=monthly_limit,
        display_order=display_order if display_order is not None else 999,
        cannot_combine_with=tuple(cannot_combine_with or ()),
    )
