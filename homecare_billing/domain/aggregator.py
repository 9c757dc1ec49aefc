"""
Receipt aggregation and validation.

Sums base visit points and bonus applications into a receipt snapshot, then
checks the receipt against coverage records and the catalog's monthly
limits. Errors block confirmation; warnings are informational.
"""

from collections import Counter
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_FLOOR, Decimal
from typing import Dict, List, Mapping, Optional, Sequence
from uuid import UUID

from homecare_billing.domain.models import (
    CATEGORIES,
    INSURANCE_MEDICAL,
    AppliedBonus,
    BillingPeriod,
    CoveragePeriod,
    FacilityProfile,
    PatientProfile,
    ReceiptSnapshot,
    ValidationIssue,
    ValidationReport,
    Visit,
)

DEFAULT_UNIT_PRICE = Decimal("10.00")


@dataclass(frozen=True)
class ValidationPolicy:
    """Thresholds for warnings; errors have no knobs"""

    low_visit_count_threshold: int = 2
    expiry_warning_days: int = 30


def category_subtotals(applications: Sequence[AppliedBonus]) -> Dict[str, int]:
    """Sum application points per category, every known category present"""
    subtotals = {category: 0 for category in CATEGORIES}
    for application in applications:
        category = application.category if application.category in subtotals else "other"
        subtotals[category] += application.points
    return subtotals


def points_to_amount(points: int, insurance_type: str, unit_price: Optional[Decimal] = None) -> int:
    """
    Convert points to yen.

    Medical points are already yen. Long-term-care units are multiplied by
    the regional unit price and rounded down.
    """
    if insurance_type == INSURANCE_MEDICAL:
        return points
    price = unit_price if unit_price is not None else DEFAULT_UNIT_PRICE
    return int((Decimal(points) * price).to_integral_value(rounding=ROUND_FLOOR))


def _issue(code: str, message: str, field: str) -> ValidationIssue:
    return ValidationIssue(code=code, message=message, field=field)


def _check_coverage(
    kind: str,
    periods: Sequence[CoveragePeriod],
    period: BillingPeriod,
    visits: Sequence[Visit],
    policy: ValidationPolicy,
    report: ValidationReport,
) -> None:
    if kind == "insurance_card":
        missing, expired, uncovered, expiring = (
            "NO_INSURANCE_CARD", "EXPIRED_INSURANCE_CARD", "VISIT_WITHOUT_VALID_CARD", "EXPIRING_INSURANCE_CARD",
        )
        label = "insurance card"
    else:
        missing, expired, uncovered, expiring = (
            "NO_DOCTOR_ORDER", "EXPIRED_DOCTOR_ORDER", "VISIT_WITHOUT_VALID_ORDER", "EXPIRING_DOCTOR_ORDER",
        )
        label = "doctor order"

    if not periods:
        report.errors.append(_issue(missing, f"No {label} registered", kind))
        return

    midpoint = period.midpoint
    if not any(p.covers(midpoint) for p in periods):
        report.errors.append(
            _issue(expired, f"No {label} valid for {period.year}-{period.month:02d}", kind)
        )

    uncovered_dates = sorted({v.visit_date for v in visits if not any(p.covers(v.visit_date) for p in periods)})
    if uncovered_dates:
        report.errors.append(
            _issue(
                uncovered,
                f"Visits without a valid {label}: {', '.join(d.isoformat() for d in uncovered_dates)}",
                kind,
            )
        )

    horizon = midpoint + timedelta(days=policy.expiry_warning_days)
    if any(p.end is not None and midpoint <= p.end <= horizon for p in periods):
        report.warnings.append(
            _issue(expiring, f"{label.capitalize()} expires within {policy.expiry_warning_days} days", kind)
        )


def _check_required_fields(patient: PatientProfile, facility: FacilityProfile, report: ValidationReport) -> None:
    """Identifying fields printed on the receipt"""
    required = {
        "patient_number": patient.patient_number,
        "full_name": patient.full_name,
        "date_of_birth": patient.date_of_birth,
        "facility_code": facility.facility_code,
    }
    for name, value in required.items():
        if value in (None, ""):
            report.errors.append(_issue("MISSING_REQUIRED_FIELD", f"{name} is required for billing", name))


def _check_monthly_limits(
    period: BillingPeriod,
    applications: Sequence[AppliedBonus],
    monthly_limits: Mapping[str, int],
    external_counts: Mapping[str, int],
    report: ValidationReport,
) -> None:
    counts = Counter(a.rule_code for a in applications)
    for code in sorted(counts):
        limit = monthly_limits.get(code)
        if limit is None:
            continue
        total = counts[code] + external_counts.get(code, 0)
        if total > limit:
            report.errors.append(
                _issue(
                    "MONTHLY_LIMIT_EXCEEDED",
                    f"{code} applied {total} times in {period.year}-{period.month:02d}, limit {limit}",
                    "bonus",
                )
            )


def _check_bonus_consistency(
    period: BillingPeriod,
    patient: PatientProfile,
    visits: Sequence[Visit],
    applications: Sequence[AppliedBonus],
    report: ValidationReport,
) -> None:
    categories = {a.category for a in applications}

    if "same_building_reduction" in categories and patient.building_id is None:
        report.warnings.append(
            _issue(
                "BUILDING_REDUCTION_WITHOUT_BUILDING",
                "Same-building reduction applied but the patient has no building registered",
                "building",
            )
        )

    if (
        patient.death_date is not None
        and period.contains(patient.death_date)
        and any(v.is_terminal_care for v in visits)
        and "terminal_care" not in categories
    ):
        report.warnings.append(
            _issue(
                "TERMINAL_CARE_NOT_APPLIED",
                "Terminal care visits recorded but no terminal care bonus was applied",
                "terminal_care",
            )
        )

    for window in patient.special_management:
        if window.end is None:
            continue
        last_day = window.end - timedelta(days=1)
        if period.contains(last_day):
            report.warnings.append(
                _issue(
                    "SPECIAL_MANAGEMENT_ENDING",
                    f"Special management ({window.category}) ends on {last_day}",
                    "special_management",
                )
            )


def validate_receipt(
    period: BillingPeriod,
    insurance_type: str,
    patient: PatientProfile,
    facility: FacilityProfile,
    visits: Sequence[Visit],
    applications: Sequence[AppliedBonus],
    insurance_cards: Sequence[CoveragePeriod] = (),
    doctor_orders: Sequence[CoveragePeriod] = (),
    monthly_limits: Optional[Mapping[str, int]] = None,
    external_counts: Optional[Mapping[str, int]] = None,
    missing_rate_dates: Sequence[date] = (),
    policy: ValidationPolicy = ValidationPolicy(),
) -> ValidationReport:
    """
    Run every receipt check and collect errors and warnings.

    ``external_counts`` maps rule codes to applications of the same month
    held by the patient's other receipts.
    """
    report = ValidationReport()
    cards = [c for c in insurance_cards if c.card_type in (None, insurance_type)]

    _check_coverage("insurance_card", cards, period, visits, policy, report)
    _check_coverage("doctor_order", doctor_orders, period, visits, policy, report)
    _check_required_fields(patient, facility, report)
    _check_monthly_limits(period, applications, monthly_limits or {}, external_counts or {}, report)

    if missing_rate_dates:
        report.errors.append(
            _issue(
                "MISSING_BASE_RATE",
                f"No base visit rate for: {', '.join(sorted({d.isoformat() for d in missing_rate_dates}))}",
                "visit_rate",
            )
        )

    if len(visits) < policy.low_visit_count_threshold:
        report.warnings.append(
            _issue("LOW_VISIT_COUNT", f"Only {len(visits)} billable visits this month", "visits")
        )

    _check_bonus_consistency(period, patient, visits, applications, report)
    return report


def aggregate(
    period: BillingPeriod,
    insurance_type: str,
    patient: PatientProfile,
    facility: FacilityProfile,
    visits: Sequence[Visit],
    applications: Sequence[AppliedBonus],
    base_points: Mapping[UUID, Optional[int]],
    insurance_cards: Sequence[CoveragePeriod] = (),
    doctor_orders: Sequence[CoveragePeriod] = (),
    monthly_limits: Optional[Mapping[str, int]] = None,
    external_counts: Optional[Mapping[str, int]] = None,
    unit_price: Optional[Decimal] = None,
    policy: ValidationPolicy = ValidationPolicy(),
) -> ReceiptSnapshot:
    """
    Build the receipt snapshot for a month of billable visits.

    ``base_points`` maps each visit record to its base rate; a visit with no
    rate contributes nothing and raises MISSING_BASE_RATE.

    Requirements:
    - grand total points = base visit points + sum of category subtotals
    - every known category present in the subtotals, zero when unused
    """
    missing_rate_dates: List[date] = [v.visit_date for v in visits if base_points.get(v.record_id) is None]
    base_visit_points = sum(base_points.get(v.record_id) or 0 for v in visits)
    subtotals = category_subtotals(applications)
    grand_total_points = base_visit_points + sum(subtotals.values())

    validation = validate_receipt(
        period,
        insurance_type,
        patient,
        facility,
        visits,
        applications,
        insurance_cards=insurance_cards,
        doctor_orders=doctor_orders,
        monthly_limits=monthly_limits,
        external_counts=external_counts,
        missing_rate_dates=missing_rate_dates,
        policy=policy,
    )

    return ReceiptSnapshot(
        visit_count=len(visits),
        base_visit_points=base_visit_points,
        category_subtotals=subtotals,
        grand_total_points=grand_total_points,
        grand_total_amount=points_to_amount(grand_total_points, insurance_type, facility.unit_price or unit_price),
        validation=validation,
    )
