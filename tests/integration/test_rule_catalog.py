"""Integration tests for rule catalog administration"""

import uuid
from datetime import date

import pytest

from homecare_billing.domain.exceptions import RuleConfigurationError, RuleNotFoundError
from homecare_billing.infrastructure.database.models import BonusRule
from homecare_billing.infrastructure.database.repositories import RuleRepository
from homecare_billing.services.rule_catalog import RuleCatalogService

NIGHT_RULE = {
    "name": "Late-night visit",
    "category": "time_of_day",
    "insurance_type": "medical",
    "valid_from": date(2024, 6, 1),
    "points_spec": {"kind": "fixed", "points": 4200},
    "conditions": [{"kind": "time_of_day", "start": "22:00", "end": "06:00"}],
}


@pytest.fixture
def service(db):
    return RuleCatalogService(db)


@pytest.mark.integration
class TestRuleCatalog:
    def test_create_assigns_next_version(self, service):
        first = service.create_rule("NIGHT", NIGHT_RULE)
        second = service.create_rule("NIGHT", {**NIGHT_RULE, "name": "Late-night visit (revised)"})

        assert first.version == 1
        assert second.version == 2
        assert first.display_order == 999
        assert second.is_active is True

    def test_create_rejects_malformed_definition(self, db, service):
        with pytest.raises(RuleConfigurationError) as exc_info:
            service.create_rule("NIGHT", {**NIGHT_RULE, "points_spec": {"kind": "moon_phase"}})

        assert exc_info.value.rule_code == "NIGHT"
        assert db.query(BonusRule).count() == 0

    def test_supersede_carries_fields_and_deactivates_old(self, db, service):
        old = service.create_rule("NIGHT", {**NIGHT_RULE, "monthly_limit": 4})

        new = service.supersede(old.id, {"points_spec": {"kind": "fixed", "points": 4500}, "valid_from": date(2025, 4, 1)})

        db.refresh(old)
        assert old.is_active is False
        assert old.superseded_by_id == new.id
        assert new.version == 2
        assert new.is_active is True
        assert new.points_spec == {"kind": "fixed", "points": 4500}
        assert new.monthly_limit == 4
        assert new.name == "Late-night visit"

    def test_supersede_with_bad_data_leaves_old_active(self, db, service):
        old = service.create_rule("NIGHT", NIGHT_RULE)

        with pytest.raises(RuleConfigurationError):
            service.supersede(old.id, {"category": "unheard_of"})

        db.refresh(old)
        assert old.is_active is True
        assert db.query(BonusRule).count() == 1

    def test_deactivated_rule_leaves_catalog(self, db, service):
        rule = service.create_rule("NIGHT", NIGHT_RULE)

        service.set_active(rule.id, False)

        assert RuleRepository(db).load_catalog().rules == ()
        assert [r.code for r in service.list_rules(active_only=True)] == []
        assert [r.code for r in service.list_rules()] == ["NIGHT"]

    def test_activate_validates_definition(self, db, service, add_rule):
        broken = add_rule("BROKEN", {"kind": "fixed"}, is_active=False)

        with pytest.raises(RuleConfigurationError):
            service.set_active(broken.id, True)

    def test_catalog_skips_malformed_rows(self, db, service, add_rule):
        service.create_rule("NIGHT", NIGHT_RULE)
        add_rule("BROKEN", {"kind": "fixed"})

        catalog = RuleRepository(db).load_catalog()

        assert [r.code for r in catalog.rules] == ["NIGHT"]
        assert catalog.skipped_rule_codes == ("BROKEN",)

    def test_unknown_rule(self, service):
        with pytest.raises(RuleNotFoundError):
            service.get_rule(uuid.uuid4())
