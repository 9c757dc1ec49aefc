"""
Receipt lifecycle manager.

Owns the transactional boundary around recalculation: per receipt key it
takes the in-process lock and the row lock, rebuilds the application set,
writes the snapshot and commits, or rolls everything back.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from homecare_billing.config import Settings, settings
from homecare_billing.domain.aggregator import ValidationPolicy, aggregate
from homecare_billing.domain.evaluator import EvaluationResult, MonthlyCountKey, RuleCatalog, evaluate
from homecare_billing.domain.exceptions import (
    DomainException,
    FacilityNotFoundError,
    IllegalTransitionError,
    PatientNotFoundError,
    ReceiptNotFoundError,
    RecalculationFailedError,
    VisitRecordNotFoundError,
)
from homecare_billing.domain.lifecycle import (
    ensure_can_delete,
    ensure_can_finalize,
    ensure_can_mark_sent,
    ensure_can_recalculate,
    ensure_can_reopen,
)
from homecare_billing.domain.models import (
    AppliedBonus,
    BillingPeriod,
    FacilityProfile,
    PatientProfile,
    ReceiptSnapshot,
    ValidationReport,
    Visit,
)
from homecare_billing.domain.rules import RollingWindowCountCondition
from homecare_billing.domain.visits import billable_in_order, build_contexts
from homecare_billing.infrastructure.database.models import BonusApplication, MonthlyReceipt
from homecare_billing.infrastructure.database.repositories import (
    ApplicationRepository,
    FacilityRepository,
    PatientRepository,
    ReceiptRepository,
    RuleRepository,
    VisitRepository,
)
from homecare_billing.infrastructure.observability.logging import log_recalculation, log_transition
from homecare_billing.infrastructure.observability.metrics import (
    record_recalculation,
    record_skipped_rules,
    record_transition,
)
from homecare_billing.services.locks import KeyedLockRegistry, receipt_locks

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReceiptKey:
    """Natural key of a monthly receipt"""

    patient_id: UUID
    facility_id: UUID
    year: int
    month: int
    insurance_type: str

    @property
    def period(self) -> BillingPeriod:
        return BillingPeriod(self.year, self.month)

    @classmethod
    def of(cls, receipt: MonthlyReceipt) -> "ReceiptKey":
        return cls(
            patient_id=receipt.patient_id,
            facility_id=receipt.facility_id,
            year=receipt.target_year,
            month=receipt.target_month,
            insurance_type=receipt.insurance_type,
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _external_counts(prior: Dict[MonthlyCountKey, int]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for (code, _, _), n in prior.items():
        counts[code] = counts.get(code, 0) + n
    return counts


class ReceiptLifecycleManager:
    """Recalculation, validation and confirm/reopen/send for monthly receipts"""

    def __init__(
        self,
        db: Session,
        locks: KeyedLockRegistry = receipt_locks,
        config: Settings = settings,
    ):
        self.db = db
        self.locks = locks
        self.config = config
        self.policy = ValidationPolicy(
            low_visit_count_threshold=config.low_visit_count_threshold,
            expiry_warning_days=config.expiry_warning_days,
        )
        self.receipts = ReceiptRepository(db)
        self.applications = ApplicationRepository(db)
        self.rules = RuleRepository(db)
        self.visits = VisitRepository(db)
        self.patients = PatientRepository(db)
        self.facilities = FacilityRepository(db)

    # ========== Transaction plumbing ==========

    @contextmanager
    def _atomic(self, key: ReceiptKey, operation: str) -> Iterator[None]:
        """Serialize on the receipt key and commit, or roll back on any failure"""
        with self.locks.hold(key, timeout=self.config.receipt_lock_timeout_seconds):
            try:
                yield
                self.db.commit()
            except DomainException:
                self.db.rollback()
                raise
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(
                    f"{operation} failed, transaction rolled back: {e}",
                    extra={"step": operation, "patient_id": str(key.patient_id)},
                )
                raise RecalculationFailedError(f"{operation} failed; safe to retry") from e

    def _require_receipt(self, receipt_id: UUID, for_update: bool = False) -> MonthlyReceipt:
        receipt = self.receipts.get(receipt_id, for_update=for_update)
        if receipt is None:
            raise ReceiptNotFoundError(f"Receipt {receipt_id} not found")
        return receipt

    # ========== Inputs ==========

    def _patient(self, key: ReceiptKey) -> PatientProfile:
        patient = self.patients.get_profile(key.patient_id)
        if patient is None:
            raise PatientNotFoundError(f"Patient {key.patient_id} not found")
        # Rules are matched against the receipt's insurance type
        return replace(patient, insurance_type=key.insurance_type)

    def _facility(self, facility_id: UUID) -> FacilityProfile:
        facility = self.facilities.get_profile(facility_id)
        if facility is None:
            raise FacilityNotFoundError(f"Facility {facility_id} not found")
        return facility

    def _history_lookback_days(self, catalog: RuleCatalog) -> int:
        windows = [
            c.window_days
            for rule in catalog.rules
            for c in rule.conditions
            if isinstance(c, RollingWindowCountCondition)
        ]
        return max(windows + [self.config.terminal_care_window_days])

    def _patient_history(self, key: ReceiptKey, catalog: RuleCatalog) -> List[Visit]:
        period = key.period
        start = period.start - timedelta(days=self._history_lookback_days(catalog))
        return self.visits.list_patient_history(key.patient_id, start, period.end)

    def _snapshot(
        self,
        key: ReceiptKey,
        patient: PatientProfile,
        facility: FacilityProfile,
        billable: Sequence[Visit],
        applications: Sequence[AppliedBonus],
        catalog: RuleCatalog,
        prior: Dict[MonthlyCountKey, int],
    ) -> ReceiptSnapshot:
        base_points = {
            v.record_id: catalog.base_points_for(v.visit_date, key.facility_id, key.insurance_type)
            for v in billable
        }
        return aggregate(
            key.period,
            key.insurance_type,
            patient,
            facility,
            billable,
            applications,
            base_points,
            insurance_cards=self.patients.insurance_cards(key.patient_id),
            doctor_orders=self.patients.doctor_orders(key.patient_id),
            monthly_limits=catalog.monthly_limits(),
            external_counts=_external_counts(prior),
            unit_price=self.config.care_unit_price,
            policy=self.policy,
        )

    # ========== Recalculation ==========

    def _recalculate_locked(
        self, key: ReceiptKey, receipt: Optional[MonthlyReceipt]
    ) -> Tuple[MonthlyReceipt, ReceiptSnapshot, EvaluationResult]:
        patient = self._patient(key)
        facility = self._facility(key.facility_id)
        catalog = self.rules.load_catalog()

        if receipt is None:
            receipt = self.receipts.create(key.patient_id, key.facility_id, key.year, key.month, key.insurance_type)

        month_visits = self.visits.list_for_month(key.patient_id, key.facility_id, key.year, key.month)
        contexts = build_contexts(
            month_visits,
            patient,
            facility,
            patient_history=self._patient_history(key, catalog),
            building_occupancy=self.visits.building_occupancy(
                patient.building_id, key.facility_id, key.year, key.month
            ),
            is_recalculation_pass=True,
            timezone=self.config.billing_timezone,
        )
        prior = self.applications.monthly_counts(
            key.patient_id,
            key.year,
            key.month,
            exclude_receipt_id=receipt.id,
            exclude_record_ids=[v.record_id for v in month_visits],
        )
        result = evaluate(contexts, catalog, prior)
        result.skipped_rules.extend(catalog.skipped_rule_codes)

        self.applications.replace_for_receipt(receipt.id, key.insurance_type, month_visits, result.applications)
        snapshot = self._snapshot(
            key, patient, facility, [c.visit for c in contexts], result.applications, catalog, prior
        )
        self.receipts.write_snapshot(receipt, snapshot)
        return receipt, snapshot, result

    def recalculate(
        self,
        patient_id: UUID,
        facility_id: UUID,
        year: int,
        month: int,
        insurance_type: str,
    ) -> MonthlyReceipt:
        """
        Rebuild a receipt's applications and snapshot from its visits.

        Creates the receipt on first use. Running it twice over unchanged
        inputs yields the same applications and totals.

        Raises:
            IllegalTransitionError: receipt confirmed or sent
            PatientNotFoundError, FacilityNotFoundError: unknown key parts
            RecalculationFailedError: persistence failed and was rolled back
        """
        key = ReceiptKey(patient_id, facility_id, year, month, insurance_type)
        start_time = time.time()

        try:
            with self._atomic(key, "recalculate"):
                receipt = self.receipts.get_by_key(
                    patient_id, facility_id, year, month, insurance_type, for_update=True
                )
                if receipt is not None:
                    ensure_can_recalculate(receipt.is_confirmed, receipt.is_sent)
                receipt, snapshot, result = self._recalculate_locked(key, receipt)
        except IllegalTransitionError:
            record_recalculation("receipt", "refused", time.time() - start_time)
            raise
        except RecalculationFailedError:
            record_recalculation("receipt", "failed", time.time() - start_time)
            raise

        duration = time.time() - start_time
        record_recalculation("receipt", "success", duration, [a.category for a in result.applications])
        record_skipped_rules(result.skipped_rules)
        log_recalculation(
            str(receipt.id),
            str(patient_id),
            year,
            month,
            snapshot.visit_count,
            len(result.applications),
            snapshot.grand_total_points,
            snapshot.has_errors,
            duration * 1000,
        )
        return receipt

    def refresh_visit(self, record_id: UUID) -> MonthlyReceipt:
        """
        Re-evaluate one edited visit and re-aggregate its receipt.

        Other visits keep their applications. Falls back to a full
        recalculation when the visit's receipt does not exist yet.
        """
        row = self.visits.get(record_id)
        if row is None:
            raise VisitRecordNotFoundError(f"Visit record {record_id} not found")
        patient_row = self.patients.get(row.patient_id)
        if patient_row is None:
            raise PatientNotFoundError(f"Patient {row.patient_id} not found")

        key = ReceiptKey(
            row.patient_id, row.facility_id, row.visit_date.year, row.visit_date.month, patient_row.insurance_type
        )
        start_time = time.time()
        scope = "visit"

        try:
            with self._atomic(key, "refresh_visit"):
                receipt = self.receipts.get_by_key(
                    key.patient_id, key.facility_id, key.year, key.month, key.insurance_type, for_update=True
                )
                if receipt is None:
                    scope = "receipt"
                    receipt, snapshot, result = self._recalculate_locked(key, None)
                else:
                    ensure_can_recalculate(receipt.is_confirmed, receipt.is_sent)
                    snapshot, result = self._refresh_locked(key, receipt, record_id)
        except IllegalTransitionError:
            record_recalculation(scope, "refused", time.time() - start_time)
            raise
        except RecalculationFailedError:
            record_recalculation(scope, "failed", time.time() - start_time)
            raise

        duration = time.time() - start_time
        record_recalculation(scope, "success", duration, [a.category for a in result.applications])
        record_skipped_rules(result.skipped_rules)
        log_recalculation(
            str(receipt.id),
            str(key.patient_id),
            key.year,
            key.month,
            snapshot.visit_count,
            len(result.applications),
            snapshot.grand_total_points,
            snapshot.has_errors,
            duration * 1000,
            scope=scope,
        )
        return receipt

    def _refresh_locked(
        self, key: ReceiptKey, receipt: MonthlyReceipt, record_id: UUID
    ) -> Tuple[ReceiptSnapshot, EvaluationResult]:
        patient = self._patient(key)
        facility = self._facility(key.facility_id)
        catalog = self.rules.load_catalog()

        month_visits = self.visits.list_for_month(key.patient_id, key.facility_id, key.year, key.month)
        visit = next(v for v in month_visits if v.record_id == record_id)
        contexts = build_contexts(
            month_visits,
            patient,
            facility,
            patient_history=self._patient_history(key, catalog),
            building_occupancy=self.visits.building_occupancy(
                patient.building_id, key.facility_id, key.year, key.month
            ),
            is_recalculation_pass=False,
            only_record_id=record_id,
            timezone=self.config.billing_timezone,
        )
        # A visit that is no longer billable yields no contexts and loses its applications
        prior = self.applications.monthly_counts(key.patient_id, key.year, key.month, exclude_record_ids=[record_id])
        result = evaluate(contexts, catalog, prior)
        result.skipped_rules.extend(catalog.skipped_rule_codes)
        self.applications.replace_for_visit(receipt.id, key.insurance_type, visit, result.applications)

        billable = billable_in_order(month_visits, self.config.billing_timezone)
        applications = self.applications.applied_for_receipt(receipt.id)
        receipt_prior = self.applications.monthly_counts(
            key.patient_id, key.year, key.month, exclude_receipt_id=receipt.id
        )
        snapshot = self._snapshot(key, patient, facility, billable, applications, catalog, receipt_prior)
        self.receipts.write_snapshot(receipt, snapshot)
        return snapshot, result

    # ========== Validation and transitions ==========

    def validate(self, receipt_id: UUID) -> ValidationReport:
        """Re-run validation over persisted applications; totals are left as they are"""
        key = ReceiptKey.of(self._require_receipt(receipt_id))
        with self._atomic(key, "validate"):
            receipt = self._require_receipt(receipt_id, for_update=True)
            patient = self._patient(key)
            facility = self._facility(key.facility_id)
            catalog = self.rules.load_catalog()
            billable = billable_in_order(
                self.visits.list_for_month(key.patient_id, key.facility_id, key.year, key.month),
                self.config.billing_timezone,
            )
            prior = self.applications.monthly_counts(
                key.patient_id, key.year, key.month, exclude_receipt_id=receipt.id
            )
            snapshot = self._snapshot(
                key, patient, facility, billable, self.applications.applied_for_receipt(receipt.id), catalog, prior
            )
            self.receipts.write_validation(receipt, snapshot.validation)
        record_transition("validate", "success")
        return snapshot.validation

    def _transition(
        self,
        receipt_id: UUID,
        operation: str,
        apply: Callable[[MonthlyReceipt], None],
    ) -> MonthlyReceipt:
        key = ReceiptKey.of(self._require_receipt(receipt_id))
        try:
            with self._atomic(key, operation):
                receipt = self._require_receipt(receipt_id, for_update=True)
                apply(receipt)
        except IllegalTransitionError as e:
            record_transition(operation, e.code)
            log_transition(str(receipt_id), operation, "refused", e.code)
            raise
        except RecalculationFailedError:
            record_transition(operation, "failed")
            raise

        record_transition(operation, "success")
        log_transition(str(receipt_id), operation, "success")
        return receipt

    def finalize(self, receipt_id: UUID, confirmed_by: Optional[str] = None) -> MonthlyReceipt:
        """
        Confirm a draft receipt.

        Raises:
            IllegalTransitionError: hasErrors, alreadyConfirmed or alreadySent
        """

        def apply(receipt: MonthlyReceipt) -> None:
            ensure_can_finalize(
                receipt.is_confirmed,
                receipt.is_sent,
                receipt.has_errors,
                [e.get("message", e.get("code")) for e in receipt.errors or []],
            )
            receipt.is_confirmed = True
            receipt.confirmed_at = _utcnow()
            receipt.confirmed_by = confirmed_by

        return self._transition(receipt_id, "finalize", apply)

    def reopen(self, receipt_id: UUID) -> MonthlyReceipt:
        def apply(receipt: MonthlyReceipt) -> None:
            ensure_can_reopen(receipt.is_confirmed, receipt.is_sent)
            receipt.is_confirmed = False
            receipt.confirmed_at = None
            receipt.confirmed_by = None

        return self._transition(receipt_id, "reopen", apply)

    def mark_sent(self, receipt_id: UUID) -> MonthlyReceipt:
        def apply(receipt: MonthlyReceipt) -> None:
            ensure_can_mark_sent(receipt.is_confirmed, receipt.is_sent)
            receipt.is_sent = True
            receipt.sent_at = _utcnow()

        return self._transition(receipt_id, "send", apply)

    def delete(self, receipt_id: UUID) -> None:
        """Administrative deletion of an unsent receipt and its applications"""

        def apply(receipt: MonthlyReceipt) -> None:
            ensure_can_delete(receipt.is_sent)
            self.receipts.delete(receipt)

        self._transition(receipt_id, "delete", apply)

    # ========== Reads ==========

    def get(self, receipt_id: UUID) -> Tuple[MonthlyReceipt, List[BonusApplication]]:
        receipt = self._require_receipt(receipt_id)
        return receipt, self.applications.list_for_receipt(receipt.id)

    def list_billable_visits(self, patient_id: UUID, facility_id: UUID, year: int, month: int) -> List[Visit]:
        """Billable visits in canonical order, as recalculation sees them"""
        return billable_in_order(
            self.visits.list_for_month(patient_id, facility_id, year, month),
            self.config.billing_timezone,
        )
