"""Unit tests for rule definition parsing"""

import uuid
from datetime import date

import pytest

from homecare_billing.domain.conditions import CONDITION_EVALUATORS
from homecare_billing.domain.exceptions import RuleConfigurationError
from homecare_billing.domain.points import POINTS_EVALUATORS
from homecare_billing.domain.rules import (
    AgeCondition,
    AgePoints,
    BuildingOccupancyPoints,
    CONDITION_KINDS,
    POINTS_KINDS,
    DurationCondition,
    FacilityCapabilityCondition,
    FixedPoints,
    TimeOfDayPoints,
    build_rule_definition,
    parse_conditions,
    parse_points,
)


def rule_data(**overrides):
    data = {
        "rule_id": uuid.uuid4(),
        "code": "LONG_VISIT",
        "name": "Long visit bonus",
        "version": 1,
        "category": "long_duration",
        "insurance_type": "medical",
        "valid_from": date(2024, 6, 1),
        "points": {"kind": "fixed", "points": 5200},
        "conditions": [{"kind": "duration", "minutes": 90}],
    }
    data.update(overrides)
    return data


def test_every_condition_kind_has_an_evaluator():
    assert set(CONDITION_KINDS) == set(CONDITION_EVALUATORS)


def test_every_points_kind_has_an_evaluator():
    assert set(POINTS_KINDS) == set(POINTS_EVALUATORS)


def test_parse_conditions_accepts_single_object():
    conditions = parse_conditions("SUPPORT_24H", {"kind": "facility_capability", "capability": "24h_support"})

    assert conditions == (FacilityCapabilityCondition(capability="24h_support"),)


def test_parse_conditions_none_is_empty():
    assert parse_conditions("ANY", None) == ()


@pytest.mark.parametrize(
    "raw",
    [
        [{"kind": "moon_phase"}],
        [{"kind": "duration"}],
        [{"kind": "duration", "minutes": 90, "unit": "hours"}],
    ],
)
def test_parse_conditions_rejects_bad_data(raw):
    with pytest.raises(RuleConfigurationError) as exc_info:
        parse_conditions("BROKEN", raw)

    assert exc_info.value.rule_code == "BROKEN"


def test_parse_points_time_of_day():
    spec = parse_points(
        "NIGHT",
        {"kind": "time_of_day", "buckets": [{"name": "night", "start": "22:00", "end": "06:00", "points": 4200}]},
    )

    assert isinstance(spec, TimeOfDayPoints)
    assert spec.buckets[0].points == 4200


def test_parse_age_and_building_kinds():
    conditions = parse_conditions("CHILD", [{"kind": "age", "years": 6}, {"kind": "has_building"}])
    occupancy = parse_points("BUILDING", {"kind": "building_occupancy", "low_points": 4500, "high_points": 4000})
    age = parse_points("CHILD", {"kind": "age", "brackets": [{"min_age": 0, "max_age": 6, "points": 800}]})

    assert conditions[0] == AgeCondition(years=6, operator="lt")
    assert conditions[1].expected is True
    assert isinstance(occupancy, BuildingOccupancyPoints)
    assert occupancy.max_low_occupancy == 2
    assert isinstance(age, AgePoints)
    assert age.brackets[0].max_age == 6


def test_parse_points_missing():
    with pytest.raises(RuleConfigurationError):
        parse_points("EMPTY", None)


def test_build_rule_definition():
    rule = build_rule_definition(**rule_data(cannot_combine_with=["SHORT_VISIT"], monthly_limit=3))

    assert rule.points == FixedPoints(points=5200)
    assert rule.conditions == (DurationCondition(minutes=90),)
    assert rule.cannot_combine_with == ("SHORT_VISIT",)
    assert rule.display_order == 999


@pytest.mark.parametrize(
    "overrides",
    [
        {"insurance_type": "private"},
        {"category": "miscellaneous"},
        {"valid_to": date(2024, 5, 31)},
        {"monthly_limit": 0},
        {"points": {"kind": "fixed"}},
    ],
)
def test_build_rule_definition_rejects_inconsistent_data(overrides):
    with pytest.raises(RuleConfigurationError):
        build_rule_definition(**rule_data(**overrides))


def test_validity_window_is_end_inclusive():
    rule = build_rule_definition(**rule_data(valid_to=date(2025, 3, 31)))

    assert rule.is_valid_on(date(2024, 6, 1))
    assert rule.is_valid_on(date(2025, 3, 31))
    assert not rule.is_valid_on(date(2025, 4, 1))
    assert not rule.is_valid_on(date(2024, 5, 31))
