"""Data access layer for billing entities"""

import logging
import uuid
from collections import Counter
from datetime import date, datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from homecare_billing.domain.evaluator import MonthlyCountKey, RuleCatalog, monthly_key
from homecare_billing.domain.exceptions import RuleConfigurationError
from homecare_billing.domain.models import (
    AppliedBonus,
    CoveragePeriod,
    FacilityProfile,
    PatientProfile,
    ReceiptSnapshot,
    SpecialManagementWindow,
    ValidationReport,
    Visit,
)
from homecare_billing.domain.rules import BonusRuleDefinition, VisitRateDefinition, build_rule_definition
from homecare_billing.domain.visits import BILLABLE_STATUSES
from homecare_billing.infrastructure.database.models import (
    BonusApplication,
    BonusRule,
    DoctorOrder,
    Facility,
    InsuranceCard,
    MonthlyReceipt,
    Patient,
    VisitRate,
    VisitRecord,
)
from homecare_billing.utils.date_utils import month_bounds

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_visit(row: VisitRecord) -> Visit:
    return Visit(
        record_id=row.id,
        patient_id=row.patient_id,
        facility_id=row.facility_id,
        visit_date=row.visit_date,
        status=row.status,
        nurse_id=row.nurse_id,
        actual_start=row.actual_start_time,
        actual_end=row.actual_end_time,
        deleted_at=row.deleted_at,
        is_terminal_care=bool(row.is_terminal_care),
        is_discharge_date=bool(row.is_discharge_date),
        is_emergency=bool(row.is_emergency),
        is_first_visit_of_plan=bool(row.is_first_visit_of_plan),
    )


def rule_definition_from_row(row: BonusRule) -> BonusRuleDefinition:
    """
    Raises:
        RuleConfigurationError: stored rule data cannot be parsed
    """
    return build_rule_definition(
        rule_id=row.id,
        code=row.code,
        name=row.name,
        version=row.version,
        category=row.category,
        insurance_type=row.insurance_type,
        valid_from=row.valid_from,
        valid_to=row.valid_to,
        facility_id=row.facility_id,
        points=row.points_spec,
        conditions=row.conditions,
        monthly_limit=row.monthly_limit,
        display_order=row.display_order,
        cannot_combine_with=row.cannot_combine_with,
    )


class PatientRepository:
    """Read-only access to patients and their coverage records"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, patient_id: uuid.UUID) -> Optional[Patient]:
        return self.db.query(Patient).filter(Patient.id == patient_id).first()

    def get_profile(self, patient_id: uuid.UUID) -> Optional[PatientProfile]:
        patient = self.get(patient_id)
        if patient is None:
            return None
        windows = tuple(
            SpecialManagementWindow(category=p.category, start=p.start_date, end=p.end_date, tier=p.tier)
            for p in sorted(patient.special_management_periods, key=lambda p: p.start_date)
        )
        return PatientProfile(
            patient_id=patient.id,
            insurance_type=patient.insurance_type,
            patient_number=patient.patient_number,
            full_name=patient.full_name,
            date_of_birth=patient.date_of_birth,
            building_id=patient.building_id,
            death_date=patient.death_date,
            death_place_code=patient.death_place_code,
            special_management=windows,
        )

    def insurance_cards(self, patient_id: uuid.UUID) -> List[CoveragePeriod]:
        rows = (
            self.db.query(InsuranceCard)
            .filter(InsuranceCard.patient_id == patient_id)
            .order_by(InsuranceCard.valid_from)
            .all()
        )
        return [CoveragePeriod(start=r.valid_from, end=r.valid_until, card_type=r.card_type) for r in rows]

    def doctor_orders(self, patient_id: uuid.UUID) -> List[CoveragePeriod]:
        rows = (
            self.db.query(DoctorOrder)
            .filter(DoctorOrder.patient_id == patient_id)
            .order_by(DoctorOrder.start_date)
            .all()
        )
        return [CoveragePeriod(start=r.start_date, end=r.end_date) for r in rows]


class FacilityRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_profile(self, facility_id: uuid.UUID) -> Optional[FacilityProfile]:
        facility = self.db.query(Facility).filter(Facility.id == facility_id).first()
        if facility is None:
            return None
        return FacilityProfile(
            facility_id=facility.id,
            name=facility.name,
            facility_code=facility.facility_code,
            capabilities=frozenset(facility.capabilities or ()),
            unit_price=facility.unit_price,
        )


class VisitRepository:
    """
    Visit record reads.

    Rows come back unfiltered; eligibility and order are decided by
    ``homecare_billing.domain.visits``.
    """

    def __init__(self, db: Session):
        self.db = db

    def get(self, record_id: uuid.UUID) -> Optional[VisitRecord]:
        return self.db.query(VisitRecord).filter(VisitRecord.id == record_id).first()

    def list_for_month(self, patient_id: uuid.UUID, facility_id: uuid.UUID, year: int, month: int) -> List[Visit]:
        start, end = month_bounds(year, month)
        rows = (
            self.db.query(VisitRecord)
            .filter(
                VisitRecord.patient_id == patient_id,
                VisitRecord.facility_id == facility_id,
                VisitRecord.visit_date >= start,
                VisitRecord.visit_date <= end,
            )
            .all()
        )
        return [to_visit(r) for r in rows]

    def list_patient_history(self, patient_id: uuid.UUID, start: date, end: date) -> List[Visit]:
        """Patient's visits at every facility between start and end inclusive"""
        rows = (
            self.db.query(VisitRecord)
            .filter(
                VisitRecord.patient_id == patient_id,
                VisitRecord.visit_date >= start,
                VisitRecord.visit_date <= end,
            )
            .all()
        )
        return [to_visit(r) for r in rows]

    def building_occupancy(
        self, building_id: Optional[uuid.UUID], facility_id: uuid.UUID, year: int, month: int
    ) -> Dict[date, int]:
        """Distinct patients of a building the facility visits, per day of the month"""
        if building_id is None:
            return {}
        start, end = month_bounds(year, month)
        rows = (
            self.db.query(VisitRecord.visit_date, func.count(VisitRecord.patient_id.distinct()))
            .join(Patient, Patient.id == VisitRecord.patient_id)
            .filter(
                Patient.building_id == building_id,
                VisitRecord.facility_id == facility_id,
                VisitRecord.status.in_(sorted(BILLABLE_STATUSES)),
                VisitRecord.deleted_at.is_(None),
                VisitRecord.visit_date >= start,
                VisitRecord.visit_date <= end,
            )
            .group_by(VisitRecord.visit_date)
            .all()
        )
        return {day: count for day, count in rows}


class RuleRepository:
    """Repository for bonus rules and visit rates"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, rule_id: uuid.UUID) -> Optional[BonusRule]:
        return self.db.query(BonusRule).filter(BonusRule.id == rule_id).first()

    def list_rules(self, active_only: bool = False) -> List[BonusRule]:
        query = self.db.query(BonusRule)
        if active_only:
            query = query.filter(BonusRule.is_active.is_(True))
        return query.order_by(BonusRule.display_order, BonusRule.code, BonusRule.version).all()

    def latest_version(self, code: str) -> int:
        return self.db.query(func.max(BonusRule.version)).filter(BonusRule.code == code).scalar() or 0

    def add(self, rule: BonusRule) -> BonusRule:
        self.db.add(rule)
        self.db.flush()
        return rule

    def load_catalog(self) -> RuleCatalog:
        """
        Snapshot of active rules and all visit rates.

        A rule whose stored definition cannot be parsed is logged and left out
        of the snapshot; the remaining rules still load.
        """
        rules = []
        skipped = []
        for row in self.list_rules(active_only=True):
            try:
                rules.append(rule_definition_from_row(row))
            except RuleConfigurationError as e:
                logger.warning(
                    f"Skipping malformed bonus rule {row.code} v{row.version}: {e}",
                    extra={"rule_code": row.code, "rule_id": str(row.id)},
                )
                skipped.append(row.code)

        rates = tuple(
            VisitRateDefinition(
                rate_id=r.id,
                insurance_type=r.insurance_type,
                valid_from=r.valid_from,
                valid_to=r.valid_to,
                facility_id=r.facility_id,
                points=r.points,
            )
            for r in self.db.query(VisitRate).all()
        )
        return RuleCatalog(rules=tuple(rules), rates=rates, skipped_rule_codes=tuple(skipped))


class ReceiptRepository:
    """Repository for monthly receipts"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, receipt_id: uuid.UUID, for_update: bool = False) -> Optional[MonthlyReceipt]:
        query = self.db.query(MonthlyReceipt).filter(MonthlyReceipt.id == receipt_id)
        if for_update:
            query = query.with_for_update().populate_existing()
        return query.first()

    def get_by_key(
        self,
        patient_id: uuid.UUID,
        facility_id: uuid.UUID,
        year: int,
        month: int,
        insurance_type: str,
        for_update: bool = False,
    ) -> Optional[MonthlyReceipt]:
        query = self.db.query(MonthlyReceipt).filter(
            MonthlyReceipt.patient_id == patient_id,
            MonthlyReceipt.facility_id == facility_id,
            MonthlyReceipt.target_year == year,
            MonthlyReceipt.target_month == month,
            MonthlyReceipt.insurance_type == insurance_type,
        )
        if for_update:
            query = query.with_for_update().populate_existing()
        return query.first()

    def create(
        self,
        patient_id: uuid.UUID,
        facility_id: uuid.UUID,
        year: int,
        month: int,
        insurance_type: str,
    ) -> MonthlyReceipt:
        receipt = MonthlyReceipt(
            patient_id=patient_id,
            facility_id=facility_id,
            target_year=year,
            target_month=month,
            insurance_type=insurance_type,
            category_subtotals={},
            errors=[],
            warnings=[],
        )
        self.db.add(receipt)
        self.db.flush()  # Unique key violation surfaces here
        return receipt

    def write_snapshot(self, receipt: MonthlyReceipt, snapshot: ReceiptSnapshot) -> MonthlyReceipt:
        receipt.visit_count = snapshot.visit_count
        receipt.base_visit_points = snapshot.base_visit_points
        receipt.category_subtotals = dict(snapshot.category_subtotals)
        receipt.grand_total_points = snapshot.grand_total_points
        receipt.grand_total_amount = snapshot.grand_total_amount
        receipt.last_calculated_at = _utcnow()
        return self.write_validation(receipt, snapshot.validation)

    def write_validation(self, receipt: MonthlyReceipt, report: ValidationReport) -> MonthlyReceipt:
        receipt.errors = [e.as_dict() for e in report.errors]
        receipt.warnings = [w.as_dict() for w in report.warnings]
        receipt.has_errors = report.has_errors
        receipt.has_warnings = report.has_warnings
        self.db.flush()
        return receipt

    def delete(self, receipt: MonthlyReceipt) -> None:
        self.db.delete(receipt)
        self.db.flush()


class ApplicationRepository:
    """Repository for bonus applications"""

    def __init__(self, db: Session):
        self.db = db

    def list_for_receipt(self, receipt_id: uuid.UUID) -> List[BonusApplication]:
        return (
            self.db.query(BonusApplication)
            .filter(BonusApplication.receipt_id == receipt_id)
            .order_by(BonusApplication.visit_date, BonusApplication.rule_code)
            .all()
        )

    def applied_for_receipt(self, receipt_id: uuid.UUID) -> List[AppliedBonus]:
        return [
            AppliedBonus(
                record_id=row.visit_record_id,
                rule_id=row.bonus_rule_id,
                rule_code=row.rule_code,
                rule_version=row.rule_version,
                category=row.category,
                points=row.points,
                explanation=row.explanation or {},
            )
            for row in self.list_for_receipt(receipt_id)
        ]

    def monthly_counts(
        self,
        patient_id: uuid.UUID,
        year: int,
        month: int,
        exclude_receipt_id: Optional[uuid.UUID] = None,
        exclude_record_ids: Iterable[uuid.UUID] = (),
    ) -> Dict[MonthlyCountKey, int]:
        """
        Live applications per (rule code, year, month) outside the scope being recomputed.

        A row counts only while its visit is billable and still falls in the
        facility and month of the receipt holding it; rows left behind by a
        moved or soft-deleted visit are stale and ignored.
        """
        start, end = month_bounds(year, month)
        query = (
            self.db.query(BonusApplication.rule_code, VisitRecord.visit_date)
            .join(VisitRecord, VisitRecord.id == BonusApplication.visit_record_id)
            .join(MonthlyReceipt, MonthlyReceipt.id == BonusApplication.receipt_id)
            .filter(
                BonusApplication.patient_id == patient_id,
                VisitRecord.patient_id == patient_id,
                VisitRecord.status.in_(sorted(BILLABLE_STATUSES)),
                VisitRecord.deleted_at.is_(None),
                VisitRecord.visit_date >= start,
                VisitRecord.visit_date <= end,
                VisitRecord.facility_id == MonthlyReceipt.facility_id,
                MonthlyReceipt.target_year == year,
                MonthlyReceipt.target_month == month,
            )
        )
        if exclude_receipt_id is not None:
            query = query.filter(BonusApplication.receipt_id != exclude_receipt_id)
        excluded = list(exclude_record_ids)
        if excluded:
            query = query.filter(BonusApplication.visit_record_id.not_in(excluded))
        return dict(Counter(monthly_key(code, day) for code, day in query.all()))

    def _insert(
        self,
        receipt_id: uuid.UUID,
        insurance_type: str,
        visits: Sequence[Visit],
        applications: Iterable[AppliedBonus],
    ) -> int:
        by_id = {v.record_id: v for v in visits}
        count = 0
        for application in applications:
            visit = by_id[application.record_id]
            self.db.add(
                BonusApplication(
                    receipt_id=receipt_id,
                    visit_record_id=application.record_id,
                    bonus_rule_id=application.rule_id,
                    patient_id=visit.patient_id,
                    visit_date=visit.visit_date,
                    insurance_type=insurance_type,
                    rule_code=application.rule_code,
                    rule_version=application.rule_version,
                    category=application.category,
                    points=application.points,
                    explanation=application.explanation,
                )
            )
            count += 1
        self.db.flush()
        return count

    def _delete_for_records(self, record_ids: Sequence[uuid.UUID], insurance_type: str) -> None:
        # Rows left on another receipt when a visit moved to a different month or facility
        if not record_ids:
            return
        self.db.query(BonusApplication).filter(
            BonusApplication.visit_record_id.in_(record_ids),
            BonusApplication.insurance_type == insurance_type,
        ).delete(synchronize_session=False)

    def replace_for_receipt(
        self,
        receipt_id: uuid.UUID,
        insurance_type: str,
        visits: Sequence[Visit],
        applications: Sequence[AppliedBonus],
    ) -> int:
        """Delete the receipt's application set, then insert the new one"""
        self.db.query(BonusApplication).filter(BonusApplication.receipt_id == receipt_id).delete(
            synchronize_session=False
        )
        self._delete_for_records([v.record_id for v in visits], insurance_type)
        self.db.flush()
        return self._insert(receipt_id, insurance_type, visits, applications)

    def replace_for_visit(
        self,
        receipt_id: uuid.UUID,
        insurance_type: str,
        visit: Visit,
        applications: Sequence[AppliedBonus],
    ) -> int:
        self._delete_for_records([visit.record_id], insurance_type)
        self.db.flush()
        return self._insert(receipt_id, insurance_type, [visit], applications)
