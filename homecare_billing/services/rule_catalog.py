"""Bonus rule catalog administration"""

import logging
from typing import Any, Dict, List
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from homecare_billing.domain.exceptions import DomainException, RecalculationFailedError, RuleNotFoundError
from homecare_billing.infrastructure.database.models import BonusRule
from homecare_billing.infrastructure.database.repositories import RuleRepository, rule_definition_from_row

logger = logging.getLogger(__name__)

# Fields a new rule version may set; code and version are assigned here
RULE_FIELDS = (
    "name",
    "category",
    "insurance_type",
    "facility_id",
    "valid_from",
    "valid_to",
    "points_spec",
    "conditions",
    "monthly_limit",
    "display_order",
    "cannot_combine_with",
)


class RuleCatalogService:
    """
    Create, activate, deactivate and supersede bonus rules.

    Definitions are never edited in place: a change is a new version that
    supersedes the old one. Every write is validated by parsing it the way
    the evaluator will.
    """

    def __init__(self, db: Session):
        self.db = db
        self.rules = RuleRepository(db)

    def _commit(self, operation: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Rule catalog {operation} failed: {e}", extra={"step": f"rule_{operation}"})
            raise RecalculationFailedError(f"Rule catalog {operation} failed; safe to retry") from e

    def _require(self, rule_id: UUID) -> BonusRule:
        rule = self.rules.get(rule_id)
        if rule is None:
            raise RuleNotFoundError(f"Bonus rule {rule_id} not found")
        return rule

    def _build(self, code: str, version: int, data: Dict[str, Any], is_active: bool) -> BonusRule:
        values = {k: data.get(k) for k in RULE_FIELDS}
        if values["display_order"] is None:
            values["display_order"] = 999
        rule = BonusRule(code=code, version=version, is_active=is_active, **values)
        rule_definition_from_row(rule)  # raises RuleConfigurationError before anything is written
        return rule

    def list_rules(self, active_only: bool = False) -> List[BonusRule]:
        return self.rules.list_rules(active_only=active_only)

    def get_rule(self, rule_id: UUID) -> BonusRule:
        return self._require(rule_id)

    def create_rule(self, code: str, data: Dict[str, Any], is_active: bool = True) -> BonusRule:
        """Add the next version of ``code``; existing versions are left untouched"""
        try:
            rule = self.rules.add(self._build(code, self.rules.latest_version(code) + 1, data, is_active))
        except DomainException:
            self.db.rollback()
            raise
        self._commit("create")
        logger.info(
            f"Bonus rule {code} v{rule.version} created",
            extra={"rule_code": code, "rule_id": str(rule.id), "step": "rule_create"},
        )
        return rule

    def set_active(self, rule_id: UUID, is_active: bool) -> BonusRule:
        rule = self._require(rule_id)
        if is_active:
            rule_definition_from_row(rule)
        rule.is_active = is_active
        self._commit("activate" if is_active else "deactivate")
        logger.info(
            f"Bonus rule {rule.code} v{rule.version} {'activated' if is_active else 'deactivated'}",
            extra={"rule_code": rule.code, "rule_id": str(rule.id)},
        )
        return rule

    def supersede(self, rule_id: UUID, data: Dict[str, Any]) -> BonusRule:
        """
        Replace a rule by a new active version.

        Fields missing from ``data`` are carried over from the old version.
        The old version is deactivated and points at its successor.
        """
        old = self._require(rule_id)
        merged = {k: getattr(old, k) for k in RULE_FIELDS}
        merged.update({k: v for k, v in data.items() if k in RULE_FIELDS})

        try:
            new = self.rules.add(self._build(old.code, self.rules.latest_version(old.code) + 1, merged, True))
        except DomainException:
            self.db.rollback()
            raise
        old.is_active = False
        old.superseded_by_id = new.id
        self._commit("supersede")
        logger.info(
            f"Bonus rule {new.code} v{old.version} superseded by v{new.version}",
            extra={"rule_code": new.code, "rule_id": str(new.id), "superseded_rule_id": str(old.id)},
        )
        return new
