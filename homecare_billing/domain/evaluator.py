"""Bonus rule evaluator - core billing logic"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from uuid import UUID

from homecare_billing.domain.conditions import evaluate_condition
from homecare_billing.domain.exceptions import RuleConfigurationError
from homecare_billing.domain.models import AppliedBonus, EvaluationContext
from homecare_billing.domain.points import compute_points
from homecare_billing.domain.rules import BonusRuleDefinition, VisitRateDefinition

logger = logging.getLogger(__name__)

# (rule code, year, month)
MonthlyCountKey = Tuple[str, int, int]


@dataclass(frozen=True)
class RuleCatalog:
    """
    Frozen snapshot of the rule catalog for one evaluation pass.

    Loaded once before any record is evaluated so every record in a pass
    sees the same rule set.
    """

    rules: Tuple[BonusRuleDefinition, ...] = ()
    rates: Tuple[VisitRateDefinition, ...] = ()
    skipped_rule_codes: Tuple[str, ...] = ()  # rows that failed to parse

    def ordered_rules(self) -> List[BonusRuleDefinition]:
        return sorted(self.rules, key=lambda r: (r.display_order, r.code, r.version))

    def rule_codes(self) -> List[str]:
        return sorted({r.code for r in self.rules})

    def monthly_limits(self) -> Dict[str, int]:
        return {r.code: r.monthly_limit for r in self.rules if r.monthly_limit is not None}

    def base_points_for(self, day: date, facility_id: UUID, insurance_type: str) -> Optional[int]:
        """Facility-specific rate beats a global one; then the latest valid_from wins"""
        candidates = [
            r for r in self.rates
            if r.insurance_type == insurance_type
            and r.is_valid_on(day)
            and (r.facility_id is None or r.facility_id == facility_id)
        ]
        if not candidates:
            return None
        best = max(candidates, key=lambda r: (r.facility_id is not None, r.valid_from))
        return best.points


@dataclass
class EvaluationResult:
    applications: List[AppliedBonus] = field(default_factory=list)
    skipped_rules: List[str] = field(default_factory=list)


def monthly_key(rule_code: str, day: date) -> MonthlyCountKey:
    return (rule_code, day.year, day.month)


def _scope_mismatch(rule: BonusRuleDefinition, ctx: EvaluationContext) -> Optional[str]:
    """Checks (a)-(c): applicability window, facility scope, insurance type"""
    if not rule.is_valid_on(ctx.visit.visit_date):
        return "outside applicability window"
    if not rule.covers_facility(ctx.visit.facility_id):
        return "facility scope mismatch"
    if rule.insurance_type != ctx.patient.insurance_type:
        return "insurance type mismatch"
    return None


def _combination_conflict(rule: BonusRuleDefinition, applied: Sequence[BonusRuleDefinition]) -> Optional[str]:
    for other in applied:
        if other.code in rule.cannot_combine_with or rule.code in other.cannot_combine_with:
            return f"cannot be combined with {other.code}"
    return None


def _monthly_limit_check(
    rule: BonusRuleDefinition,
    ctx: EvaluationContext,
    live_counts: Mapping[MonthlyCountKey, int],
) -> Tuple[bool, str]:
    limit = rule.monthly_limit
    if limit is None:
        return True, "no monthly limit"

    if limit == 1 and ctx.is_recalculation_pass and not ctx.is_first_record_of_month:
        return False, "once-per-month rule is applied to the first record of the month only"

    current = live_counts.get(monthly_key(rule.code, ctx.visit.visit_date), 0)
    if current >= limit:
        return False, f"monthly limit {limit} reached ({current} applied)"
    return True, f"within monthly limit ({current}/{limit})"


def evaluate_rule(
    rule: BonusRuleDefinition,
    ctx: EvaluationContext,
    live_counts: Mapping[MonthlyCountKey, int],
    applied_rules: Sequence[BonusRuleDefinition] = (),
) -> Optional[AppliedBonus]:
    """
    Evaluate one rule for one visit. Returns None on any non-match.

    Raises:
        RuleConfigurationError: the rule cannot be evaluated
    """
    mismatch = _scope_mismatch(rule, ctx) or _combination_conflict(rule, applied_rules)
    if mismatch:
        logger.debug("Rule %s not applicable to %s: %s", rule.code, ctx.visit.record_id, mismatch)
        return None

    satisfied = []
    for condition in rule.conditions:
        result = evaluate_condition(rule.code, condition, ctx)
        if not result.passed:
            logger.debug("Rule %s condition %s failed for %s: %s",
                         rule.code, condition.kind, ctx.visit.record_id, result.reason)
            return None
        satisfied.append({"kind": condition.kind, "reason": result.reason, **result.metadata})

    within_limit, limit_reason = _monthly_limit_check(rule, ctx, live_counts)
    if not within_limit:
        logger.debug("Rule %s skipped for %s: %s", rule.code, ctx.visit.record_id, limit_reason)
        return None
    if rule.monthly_limit is not None:
        satisfied.append({"kind": "monthly_limit", "reason": limit_reason})

    points = compute_points(rule.code, rule.points, ctx)
    if points.points == 0:
        return None

    return AppliedBonus(
        record_id=ctx.visit.record_id,
        rule_id=rule.rule_id,
        rule_code=rule.code,
        rule_version=rule.version,
        category=rule.category,
        points=points.points,
        explanation={
            "rule_code": rule.code,
            "rule_name": rule.name,
            "rule_version": rule.version,
            "points_kind": rule.points.kind,
            "points_basis": points.basis,
            "points": points.points,
            "points_metadata": points.metadata,
            "conditions": satisfied,
            "is_first_record_of_month": ctx.is_first_record_of_month,
            "is_recalculation_pass": ctx.is_recalculation_pass,
        },
    )


def evaluate(
    contexts: Iterable[EvaluationContext],
    catalog: RuleCatalog,
    prior_counts: Optional[Mapping[MonthlyCountKey, int]] = None,
) -> EvaluationResult:
    """
    Produce bonus applications for contexts in the given (canonical) order.

    ``prior_counts`` holds live applications outside the evaluated scope,
    keyed by (rule code, year, month); applications produced in this call
    are added as they are made, so the monthly limit holds across records.
    A rule that raises a configuration error is skipped for that record and
    evaluation continues.
    """
    live_counts: Counter = Counter(prior_counts or {})
    result = EvaluationResult()
    rules = catalog.ordered_rules()

    for ctx in contexts:
        applied_rules: List[BonusRuleDefinition] = []
        for rule in rules:
            try:
                application = evaluate_rule(rule, ctx, live_counts, applied_rules)
            except (RuleConfigurationError, ValueError, TypeError, ArithmeticError) as e:
                logger.warning(
                    f"Skipping misconfigured rule {rule.code}: {e}",
                    extra={"rule_code": rule.code, "record_id": str(ctx.visit.record_id)},
                )
                result.skipped_rules.append(rule.code)
                continue

            if application is None:
                continue
            result.applications.append(application)
            applied_rules.append(rule)
            live_counts[monthly_key(rule.code, ctx.visit.visit_date)] += 1

    return result
