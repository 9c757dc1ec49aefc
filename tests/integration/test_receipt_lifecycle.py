"""Integration tests for recalculation and the receipt lifecycle"""

import uuid

import pytest
from datetime import date, datetime

from sqlalchemy.exc import OperationalError

from homecare_billing.domain.exceptions import (
    IllegalTransitionError,
    PatientNotFoundError,
    ReceiptNotFoundError,
    RecalculationFailedError,
)
from homecare_billing.infrastructure.database.models import (
    BonusApplication,
    Facility,
    InsuranceCard,
    MonthlyReceipt,
    Patient,
)
from homecare_billing.services.locks import KeyedLockRegistry
from homecare_billing.services.receipt_lifecycle import ReceiptLifecycleManager

SUPPORT_24H_POINTS = {"kind": "fixed", "points": 6800}
SUPPORT_24H_CONDITIONS = [{"kind": "facility_capability", "capability": "24h_support"}]


@pytest.fixture
def manager(db):
    return ReceiptLifecycleManager(db, locks=KeyedLockRegistry())


@pytest.fixture
def march_visits(add_visit):
    return [add_visit(date(2025, 3, 3)), add_visit(date(2025, 3, 10)), add_visit(date(2025, 3, 17))]


def recalc_march(manager, patient, facility):
    return manager.recalculate(patient.id, facility.id, 2025, 3, "medical")


def application_keys(db, receipt):
    rows = db.query(BonusApplication).filter(BonusApplication.receipt_id == receipt.id).all()
    return sorted((str(r.visit_record_id), r.rule_code, r.points) for r in rows)


@pytest.mark.integration
class TestRecalculation:
    def test_creates_receipt_with_totals(self, db, manager, patient, facility, march_visits, add_rule):
        add_rule("SUPPORT_24H", SUPPORT_24H_POINTS, SUPPORT_24H_CONDITIONS, category="support_system")

        receipt = recalc_march(manager, patient, facility)

        assert receipt.visit_count == 3
        assert receipt.base_visit_points == 3 * 5550
        assert receipt.category_subtotals["support_system"] == 3 * 6800
        assert receipt.grand_total_points == 3 * 5550 + 3 * 6800
        assert receipt.grand_total_amount == receipt.grand_total_points
        assert receipt.has_errors is False
        assert receipt.errors == []
        assert receipt.last_calculated_at is not None

    def test_recalculation_is_idempotent(self, db, manager, patient, facility, march_visits, add_rule):
        add_rule("SUPPORT_24H", SUPPORT_24H_POINTS, SUPPORT_24H_CONDITIONS, category="support_system", monthly_limit=1)
        add_rule("LONG_VISIT", {"kind": "fixed", "points": 5200}, [{"kind": "duration", "minutes": 50}], category="long_duration")

        first = recalc_march(manager, patient, facility)
        first_keys = application_keys(db, first)
        first_total = first.grand_total_points

        second = recalc_march(manager, patient, facility)

        assert second.id == first.id
        assert application_keys(db, second) == first_keys
        assert second.grand_total_points == first_total
        assert db.query(MonthlyReceipt).count() == 1

    def test_once_per_month_rule_goes_to_first_visit(self, db, manager, patient, facility, march_visits, add_rule):
        add_rule("SUPPORT_24H", SUPPORT_24H_POINTS, SUPPORT_24H_CONDITIONS, category="support_system", monthly_limit=1)

        receipt = recalc_march(manager, patient, facility)

        rows = db.query(BonusApplication).filter(BonusApplication.receipt_id == receipt.id).all()
        assert [r.visit_record_id for r in rows] == [march_visits[0].id]

    def test_monthly_limit_holds_across_facilities(self, db, manager, patient, facility, march_visits, add_visit, add_rule):
        other = Facility(name="Kaede Visiting Nursing", facility_code="1399999999", capabilities=["24h_support"])
        db.add(other)
        db.commit()
        add_visit(date(2025, 3, 1), facility_id=other.id)
        add_visit(date(2025, 3, 20), facility_id=other.id)
        add_rule("SUPPORT_24H", SUPPORT_24H_POINTS, SUPPORT_24H_CONDITIONS, category="support_system", monthly_limit=1)

        first = recalc_march(manager, patient, facility)
        second = manager.recalculate(patient.id, other.id, 2025, 3, "medical")

        assert first.category_subtotals["support_system"] == 6800
        assert second.category_subtotals["support_system"] == 0
        assert db.query(BonusApplication).filter(BonusApplication.rule_code == "SUPPORT_24H").count() == 1
        assert second.has_errors is False

    def test_moved_visit_keeps_once_per_month_bonus(self, db, manager, patient, facility, add_visit, add_rule):
        other = Facility(name="Kaede Visiting Nursing", facility_code="1399999999", capabilities=["24h_support"])
        db.add(other)
        db.commit()
        visit = add_visit(date(2025, 3, 3))
        add_rule("SUPPORT_24H", SUPPORT_24H_POINTS, SUPPORT_24H_CONDITIONS, category="support_system", monthly_limit=1)
        recalc_march(manager, patient, facility)

        visit.facility_id = other.id
        db.commit()
        first = manager.recalculate(patient.id, other.id, 2025, 3, "medical")
        first_total = first.category_subtotals["support_system"]
        second = manager.recalculate(patient.id, other.id, 2025, 3, "medical")

        assert first_total == 6800
        assert second.category_subtotals["support_system"] == 6800
        rows = db.query(BonusApplication).filter(BonusApplication.rule_code == "SUPPORT_24H").all()
        assert [(r.visit_record_id, r.receipt_id) for r in rows] == [(visit.id, second.id)]

    def test_soft_deleted_visit_releases_monthly_limit(self, db, manager, patient, facility, add_visit, add_rule):
        other = Facility(name="Kaede Visiting Nursing", facility_code="1399999999", capabilities=["24h_support"])
        db.add(other)
        db.commit()
        deleted = add_visit(date(2025, 3, 3))
        add_rule("SUPPORT_24H", SUPPORT_24H_POINTS, SUPPORT_24H_CONDITIONS, category="support_system", monthly_limit=1)
        recalc_march(manager, patient, facility)

        deleted.deleted_at = datetime(2025, 3, 4, 9, 0)
        db.commit()
        moved_on = add_visit(date(2025, 3, 10), facility_id=other.id)
        receipt = manager.recalculate(patient.id, other.id, 2025, 3, "medical")

        assert receipt.category_subtotals["support_system"] == 6800
        rows = db.query(BonusApplication).filter(BonusApplication.receipt_id == receipt.id).all()
        assert [r.visit_record_id for r in rows] == [moved_on.id]
        assert receipt.has_errors is False

    def test_building_occupancy_counts_neighbours_visited_that_day(
        self, db, manager, patient, facility, add_visit, add_rule
    ):
        building = uuid.uuid4()
        patient.building_id = building
        neighbours = [
            Patient(facility_id=facility.id, full_name=name, insurance_type="medical", building_id=building)
            for name in ("Suzuki Ichiro", "Tanaka Yoko")
        ]
        db.add_all(neighbours)
        db.commit()
        crowded = add_visit(date(2025, 3, 3))
        quiet = add_visit(date(2025, 3, 4))
        for neighbour in neighbours:
            add_visit(date(2025, 3, 3), patient_id=neighbour.id)
        add_visit(date(2025, 3, 4), patient_id=neighbours[0].id, status="draft")
        add_rule(
            "SAME_BUILDING",
            {"kind": "building_occupancy", "low_points": 4500, "high_points": 4000},
            [{"kind": "has_building"}],
        )

        receipt = recalc_march(manager, patient, facility)

        rows = db.query(BonusApplication).filter(BonusApplication.receipt_id == receipt.id).all()
        points = {r.visit_record_id: r.points for r in rows}
        assert points == {crowded.id: 4000, quiet.id: 4500}
        occupancy = {r.visit_record_id: r.explanation["points_metadata"]["occupancy"] for r in rows}
        assert occupancy == {crowded.id: 3, quiet.id: 1}

    def test_ineligible_visits_excluded(self, manager, patient, facility, march_visits, add_visit):
        add_visit(date(2025, 3, 5), status="draft")
        add_visit(date(2025, 3, 6), deleted_at=datetime(2025, 3, 7, 9, 0))

        receipt = recalc_march(manager, patient, facility)

        assert receipt.visit_count == 3

    def test_terminal_care_applied_on_death_date(self, db, manager, patient, facility, add_visit, add_rule):
        patient.death_date = date(2025, 3, 20)
        db.commit()
        add_visit(date(2025, 3, 12), is_terminal_care=True)
        on_death = add_visit(date(2025, 3, 20), is_terminal_care=True)
        add_rule(
            "TERMINAL_CARE",
            {"kind": "fixed", "points": 25000},
            [{"kind": "rolling_window_count", "flag": "is_terminal_care", "window_days": 14, "min_count": 2}],
            category="terminal_care",
        )

        receipt = recalc_march(manager, patient, facility)

        rows = db.query(BonusApplication).filter(BonusApplication.receipt_id == receipt.id).all()
        assert [(r.visit_record_id, r.points) for r in rows] == [(on_death.id, 25000)]
        assert "TERMINAL_CARE_NOT_APPLIED" not in [w["code"] for w in receipt.warnings]

    def test_malformed_rule_does_not_block_others(self, db, manager, patient, facility, march_visits, add_rule):
        add_rule("BROKEN", {"kind": "moon_phase"})
        add_rule("SUPPORT_24H", SUPPORT_24H_POINTS, SUPPORT_24H_CONDITIONS, category="support_system", monthly_limit=1)

        receipt = recalc_march(manager, patient, facility)

        assert [r.rule_code for r in db.query(BonusApplication).all()] == ["SUPPORT_24H"]
        assert receipt.grand_total_points == 3 * 5550 + 6800

    def test_inactive_rules_ignored(self, db, manager, patient, facility, march_visits, add_rule):
        add_rule("SUPPORT_24H", SUPPORT_24H_POINTS, SUPPORT_24H_CONDITIONS, is_active=False)

        receipt = recalc_march(manager, patient, facility)

        assert receipt.grand_total_points == 3 * 5550

    def test_expired_card_reported(self, db, manager, patient, facility, march_visits):
        card = db.query(InsuranceCard).filter(InsuranceCard.patient_id == patient.id).one()
        card.valid_until = date(2025, 2, 28)
        db.commit()

        receipt = recalc_march(manager, patient, facility)

        assert receipt.has_errors is True
        assert [e["code"] for e in receipt.errors] == ["EXPIRED_INSURANCE_CARD", "VISIT_WITHOUT_VALID_CARD"]

    def test_unknown_patient(self, manager, facility):
        with pytest.raises(PatientNotFoundError):
            manager.recalculate(uuid.uuid4(), facility.id, 2025, 3, "medical")

    def test_persistence_failure_rolls_back(self, db, manager, patient, facility, march_visits, monkeypatch):
        def failing_write(receipt, snapshot):
            raise OperationalError("UPDATE monthly_receipt", {}, Exception("database is locked"))

        monkeypatch.setattr(manager.receipts, "write_snapshot", failing_write)

        with pytest.raises(RecalculationFailedError):
            recalc_march(manager, patient, facility)

        assert db.query(MonthlyReceipt).count() == 0
        assert db.query(BonusApplication).count() == 0


@pytest.mark.integration
class TestRefreshVisit:
    def test_refresh_drops_applications_of_deleted_visit(self, db, manager, patient, facility, march_visits, add_rule):
        add_rule("LONG_VISIT", {"kind": "fixed", "points": 5200}, [{"kind": "duration", "minutes": 50}], category="long_duration")
        receipt = recalc_march(manager, patient, facility)
        assert receipt.category_subtotals["long_duration"] == 3 * 5200

        march_visits[1].deleted_at = datetime(2025, 3, 11, 9, 0)
        db.commit()
        receipt = manager.refresh_visit(march_visits[1].id)

        assert receipt.visit_count == 2
        assert receipt.category_subtotals["long_duration"] == 2 * 5200
        assert receipt.grand_total_points == 2 * 5550 + 2 * 5200
        remaining = {r.visit_record_id for r in db.query(BonusApplication).all()}
        assert march_visits[1].id not in remaining

    def test_refresh_reevaluates_edited_visit_only(self, db, manager, patient, facility, march_visits, add_rule):
        add_rule("LONG_VISIT", {"kind": "fixed", "points": 5200}, [{"kind": "duration", "minutes": 90}], category="long_duration")
        receipt = recalc_march(manager, patient, facility)
        assert receipt.category_subtotals["long_duration"] == 0

        march_visits[2].actual_end_time = datetime(2025, 3, 17, 12, 0)
        db.commit()
        receipt = manager.refresh_visit(march_visits[2].id)

        rows = db.query(BonusApplication).all()
        assert [r.visit_record_id for r in rows] == [march_visits[2].id]
        assert receipt.category_subtotals["long_duration"] == 5200

    def test_refresh_respects_monthly_limit(self, db, manager, patient, facility, march_visits, add_rule):
        add_rule("SUPPORT_24H", SUPPORT_24H_POINTS, SUPPORT_24H_CONDITIONS, category="support_system", monthly_limit=1)
        recalc_march(manager, patient, facility)

        manager.refresh_visit(march_visits[2].id)

        rows = db.query(BonusApplication).all()
        assert [r.visit_record_id for r in rows] == [march_visits[0].id]

    def test_refresh_without_receipt_runs_full_recalculation(self, db, manager, patient, facility, march_visits):
        receipt = manager.refresh_visit(march_visits[0].id)

        assert receipt.visit_count == 3
        assert db.query(MonthlyReceipt).count() == 1

    def test_refresh_refused_on_confirmed_receipt(self, manager, patient, facility, march_visits):
        receipt = recalc_march(manager, patient, facility)
        manager.finalize(receipt.id)

        with pytest.raises(IllegalTransitionError) as exc_info:
            manager.refresh_visit(march_visits[0].id)

        assert exc_info.value.code == "receiptConfirmed"


@pytest.mark.integration
class TestTransitions:
    def test_finalize_reopen_send(self, manager, patient, facility, march_visits):
        receipt = recalc_march(manager, patient, facility)

        receipt = manager.finalize(receipt.id, confirmed_by="clerk-01")
        assert receipt.is_confirmed is True
        assert receipt.confirmed_by == "clerk-01"
        assert receipt.confirmed_at is not None

        receipt = manager.reopen(receipt.id)
        assert receipt.is_confirmed is False
        assert receipt.confirmed_at is None

        manager.finalize(receipt.id)
        receipt = manager.mark_sent(receipt.id)
        assert receipt.is_sent is True
        assert receipt.sent_at is not None

    def test_finalize_refused_with_errors(self, db, manager, patient, facility, march_visits):
        card = db.query(InsuranceCard).filter(InsuranceCard.patient_id == patient.id).one()
        card.valid_until = date(2025, 2, 28)
        db.commit()
        receipt = recalc_march(manager, patient, facility)

        with pytest.raises(IllegalTransitionError) as exc_info:
            manager.finalize(receipt.id)

        assert exc_info.value.code == "hasErrors"
        assert len(exc_info.value.messages) == 2
        db.refresh(receipt)
        assert receipt.is_confirmed is False

    def test_finalize_twice_refused(self, manager, patient, facility, march_visits):
        receipt = recalc_march(manager, patient, facility)
        manager.finalize(receipt.id)

        with pytest.raises(IllegalTransitionError) as exc_info:
            manager.finalize(receipt.id)

        assert exc_info.value.code == "alreadyConfirmed"

    def test_recalculate_refused_when_confirmed(self, manager, patient, facility, march_visits):
        receipt = recalc_march(manager, patient, facility)
        manager.finalize(receipt.id)

        with pytest.raises(IllegalTransitionError) as exc_info:
            recalc_march(manager, patient, facility)

        assert exc_info.value.code == "receiptConfirmed"

    def test_sent_receipt_is_final(self, manager, patient, facility, march_visits):
        receipt = recalc_march(manager, patient, facility)
        manager.finalize(receipt.id)
        manager.mark_sent(receipt.id)

        for operation in (manager.reopen, manager.mark_sent, manager.delete, manager.finalize):
            with pytest.raises(IllegalTransitionError) as exc_info:
                operation(receipt.id)
            assert exc_info.value.code == "alreadySent"

        with pytest.raises(IllegalTransitionError) as exc_info:
            recalc_march(manager, patient, facility)
        assert exc_info.value.code == "alreadySent"

    def test_reopen_draft_refused(self, manager, patient, facility, march_visits):
        receipt = recalc_march(manager, patient, facility)

        with pytest.raises(IllegalTransitionError) as exc_info:
            manager.reopen(receipt.id)

        assert exc_info.value.code == "notConfirmed"

    def test_send_draft_refused(self, manager, patient, facility, march_visits):
        receipt = recalc_march(manager, patient, facility)

        with pytest.raises(IllegalTransitionError) as exc_info:
            manager.mark_sent(receipt.id)

        assert exc_info.value.code == "notConfirmed"

    def test_validate_picks_up_coverage_changes(self, db, manager, patient, facility, march_visits):
        receipt = recalc_march(manager, patient, facility)
        total = receipt.grand_total_points
        card = db.query(InsuranceCard).filter(InsuranceCard.patient_id == patient.id).one()
        card.valid_until = date(2025, 2, 28)
        db.commit()

        report = manager.validate(receipt.id)

        assert report.has_errors
        receipt, _ = manager.get(receipt.id)
        assert receipt.has_errors is True
        assert receipt.grand_total_points == total

    def test_delete_removes_receipt_and_applications(self, db, manager, patient, facility, march_visits, add_rule):
        add_rule("SUPPORT_24H", SUPPORT_24H_POINTS, SUPPORT_24H_CONDITIONS, category="support_system")
        receipt = recalc_march(manager, patient, facility)
        receipt_id = receipt.id

        manager.delete(receipt_id)

        assert db.query(MonthlyReceipt).count() == 0
        assert db.query(BonusApplication).count() == 0
        with pytest.raises(ReceiptNotFoundError):
            manager.get(receipt_id)

    def test_listing_matches_recalculation_order(self, manager, patient, facility, add_visit):
        late = add_visit(date(2025, 3, 8), start=None, end=None)
        early = add_visit(date(2025, 3, 8), start="09:00", end="10:00")
        add_visit(date(2025, 3, 9), status="draft")

        visits = manager.list_billable_visits(patient.id, facility.id, 2025, 3)

        assert [v.record_id for v in visits] == [early.id, late.id]
