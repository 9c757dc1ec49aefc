"""Unit tests for receipt aggregation and validation"""

import uuid
from dataclasses import replace
from datetime import date
from decimal import Decimal

from homecare_billing.domain.aggregator import (
    ValidationPolicy,
    aggregate,
    category_subtotals,
    points_to_amount,
    validate_receipt,
)
from homecare_billing.domain.models import (
    CATEGORIES,
    AppliedBonus,
    BillingPeriod,
    CoveragePeriod,
    FacilityProfile,
    PatientProfile,
    SpecialManagementWindow,
    Visit,
)

PATIENT_ID = uuid.uuid4()
FACILITY_ID = uuid.uuid4()
MARCH = BillingPeriod(2025, 3)
FULL_YEAR = CoveragePeriod(start=date(2025, 1, 1), end=date(2025, 12, 31))

PATIENT = PatientProfile(
    patient_id=PATIENT_ID,
    insurance_type="medical",
    patient_number="P-0001",
    full_name="Yamada Hanako",
    date_of_birth=date(1940, 4, 1),
)
FACILITY = FacilityProfile(facility_id=FACILITY_ID, facility_code="1312345678")


def make_visit(day: int, **flags) -> Visit:
    return Visit(
        record_id=uuid.uuid4(),
        patient_id=PATIENT_ID,
        facility_id=FACILITY_ID,
        visit_date=date(2025, 3, day),
        status="completed",
        **flags,
    )


def make_application(visit: Visit, code: str, category: str, points: int) -> AppliedBonus:
    return AppliedBonus(
        record_id=visit.record_id,
        rule_id=uuid.uuid4(),
        rule_code=code,
        rule_version=1,
        category=category,
        points=points,
    )


def codes(issues):
    return [issue.code for issue in issues]


def run_validation(visits, applications=(), patient=PATIENT, **kwargs):
    kwargs.setdefault("insurance_cards", [FULL_YEAR])
    kwargs.setdefault("doctor_orders", [FULL_YEAR])
    return validate_receipt(MARCH, "medical", patient, FACILITY, visits, applications, **kwargs)


# ========== Totals ==========


def test_grand_total_is_base_plus_subtotals():
    visits = [make_visit(3), make_visit(10)]
    applications = [
        make_application(visits[0], "SUPPORT_24H", "support_system", 6800),
        make_application(visits[1], "LONG_VISIT", "long_duration", 5200),
        make_application(visits[1], "SAME_BUILDING", "same_building_reduction", -300),
    ]

    snapshot = aggregate(
        MARCH, "medical", PATIENT, FACILITY, visits, applications,
        base_points={v.record_id: 5550 for v in visits},
        insurance_cards=[FULL_YEAR], doctor_orders=[FULL_YEAR],
    )

    assert snapshot.visit_count == 2
    assert snapshot.base_visit_points == 11100
    assert snapshot.category_subtotals["support_system"] == 6800
    assert snapshot.category_subtotals["same_building_reduction"] == -300
    assert snapshot.grand_total_points == 11100 + 6800 + 5200 - 300
    assert snapshot.grand_total_points == snapshot.base_visit_points + sum(snapshot.category_subtotals.values())
    assert snapshot.grand_total_amount == snapshot.grand_total_points


def test_subtotals_zero_filled_and_unknown_category_goes_to_other():
    visit = make_visit(3)

    subtotals = category_subtotals([make_application(visit, "MYSTERY", "unlisted", 150)])

    assert set(subtotals) == set(CATEGORIES)
    assert subtotals["other"] == 150
    assert subtotals["emergency"] == 0


def test_long_term_care_amount_rounds_down():
    assert points_to_amount(1003, "long_term_care", Decimal("10.21")) == 10240
    assert points_to_amount(821, "long_term_care") == 8210
    assert points_to_amount(5550, "medical", Decimal("10.21")) == 5550


def test_facility_unit_price_overrides_default():
    patient = replace(PATIENT, insurance_type="long_term_care")
    facility = FacilityProfile(facility_id=FACILITY_ID, facility_code="1312345678", unit_price=Decimal("11.40"))
    visits = [make_visit(3), make_visit(10)]

    snapshot = aggregate(
        MARCH, "long_term_care", patient, facility, visits, [],
        base_points={v.record_id: 821 for v in visits},
        unit_price=Decimal("10.00"),
    )

    assert snapshot.grand_total_points == 1642
    assert snapshot.grand_total_amount == 18718


def test_missing_base_rate_is_an_error():
    visits = [make_visit(3), make_visit(10)]

    snapshot = aggregate(
        MARCH, "medical", PATIENT, FACILITY, visits, [],
        base_points={visits[0].record_id: 5550},
        insurance_cards=[FULL_YEAR], doctor_orders=[FULL_YEAR],
    )

    assert snapshot.base_visit_points == 5550
    assert codes(snapshot.validation.errors) == ["MISSING_BASE_RATE"]
    assert "2025-03-10" in snapshot.validation.errors[0].message


# ========== Coverage ==========


def test_clean_receipt_has_no_issues():
    report = run_validation([make_visit(3), make_visit(10)])

    assert report.errors == []
    assert report.warnings == []


def test_no_insurance_card_or_order():
    report = run_validation([make_visit(3), make_visit(10)], insurance_cards=[], doctor_orders=[])

    assert codes(report.errors) == ["NO_INSURANCE_CARD", "NO_DOCTOR_ORDER"]


def test_expired_card_blocks_at_midpoint():
    expired = CoveragePeriod(start=date(2024, 4, 1), end=date(2025, 3, 10), card_type="medical")

    report = run_validation([make_visit(3), make_visit(12)], insurance_cards=[expired])

    assert codes(report.errors) == ["EXPIRED_INSURANCE_CARD", "VISIT_WITHOUT_VALID_CARD"]
    assert "2025-03-12" in report.errors[1].message


def test_card_of_other_insurance_type_ignored():
    care_card = CoveragePeriod(start=date(2025, 1, 1), card_type="long_term_care")

    report = run_validation([make_visit(3), make_visit(10)], insurance_cards=[care_card])

    assert codes(report.errors) == ["NO_INSURANCE_CARD"]


def test_order_expiring_soon_is_a_warning():
    ending = CoveragePeriod(start=date(2025, 1, 1), end=date(2025, 3, 31))

    report = run_validation([make_visit(3), make_visit(10)], doctor_orders=[ending])

    assert report.errors == []
    assert codes(report.warnings) == ["EXPIRING_DOCTOR_ORDER"]


def test_order_expiring_beyond_horizon_is_not_a_warning():
    ending = CoveragePeriod(start=date(2025, 1, 1), end=date(2025, 4, 30))

    report = run_validation([make_visit(3), make_visit(10)], doctor_orders=[ending])

    assert report.warnings == []


# ========== Other checks ==========


def test_missing_identifying_fields():
    patient = PatientProfile(patient_id=PATIENT_ID, insurance_type="medical", full_name="")

    report = run_validation([make_visit(3), make_visit(10)], patient=patient)

    assert codes(report.errors) == ["MISSING_REQUIRED_FIELD"] * 3
    assert {issue.field for issue in report.errors} == {"patient_number", "full_name", "date_of_birth"}


def test_monthly_limit_exceeded_counts_other_receipts():
    visits = [make_visit(3), make_visit(10)]
    applications = [make_application(visits[0], "SUPPORT_24H", "support_system", 6800)]

    report = run_validation(
        visits, applications, monthly_limits={"SUPPORT_24H": 1}, external_counts={"SUPPORT_24H": 1}
    )

    assert codes(report.errors) == ["MONTHLY_LIMIT_EXCEEDED"]


def test_monthly_limit_within_bounds():
    visits = [make_visit(3), make_visit(10)]
    applications = [make_application(visits[0], "SUPPORT_24H", "support_system", 6800)]

    report = run_validation(visits, applications, monthly_limits={"SUPPORT_24H": 1})

    assert report.errors == []


def test_low_visit_count_warning():
    report = run_validation([make_visit(3)], policy=ValidationPolicy(low_visit_count_threshold=2))

    assert codes(report.warnings) == ["LOW_VISIT_COUNT"]
    assert not report.has_errors


def test_terminal_care_not_applied_warning():
    patient = replace(PATIENT, death_date=date(2025, 3, 20))
    visits = [make_visit(10, is_terminal_care=True), make_visit(20, is_terminal_care=True)]

    report = run_validation(visits, patient=patient)

    assert codes(report.warnings) == ["TERMINAL_CARE_NOT_APPLIED"]


def test_building_reduction_without_building_warning():
    visits = [make_visit(3), make_visit(10)]
    applications = [make_application(visits[0], "SAME_BUILDING", "same_building_reduction", -300)]

    report = run_validation(visits, applications)

    assert codes(report.warnings) == ["BUILDING_REDUCTION_WITHOUT_BUILDING"]


def test_special_management_ending_warning():
    window = SpecialManagementWindow(category="catheter", start=date(2025, 1, 1), end=date(2025, 3, 21))
    patient = replace(PATIENT, special_management=(window,))

    report = run_validation([make_visit(3), make_visit(10)], patient=patient)

    assert codes(report.warnings) == ["SPECIAL_MANAGEMENT_ENDING"]
    assert "2025-03-20" in report.warnings[0].message
