"""Bonus rule catalog administration endpoints"""

import uuid
from typing import List
from fastapi import APIRouter, Depends, HTTPException, Query, Request

from homecare_billing.api.dependencies import get_request_id, get_rule_catalog, to_http_error
from homecare_billing.api.v1.schemas import CreateRuleRequest, RuleResponse, SupersedeRuleRequest
from homecare_billing.domain.exceptions import DomainException
from homecare_billing.services.rule_catalog import RuleCatalogService

router = APIRouter()


def _parse_id(rule_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(rule_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid rule ID format")


@router.get("/rules", response_model=List[RuleResponse])
def list_rules(
    active_only: bool = Query(False, description="Only rules the evaluator will load"),
    catalog: RuleCatalogService = Depends(get_rule_catalog),
):
    return [RuleResponse.model_validate(r) for r in catalog.list_rules(active_only=active_only)]


@router.post("/rules", response_model=RuleResponse, status_code=201)
def create_rule(
    request_body: CreateRuleRequest,
    request: Request,
    catalog: RuleCatalogService = Depends(get_rule_catalog),
):
    """
    Add a bonus rule.

    A code that already exists gets its next version; the definition is
    parsed before it is stored and rejected with 422 if malformed.
    """
    data = request_body.model_dump(exclude={"code", "is_active"})
    try:
        rule = catalog.create_rule(request_body.code, data, is_active=request_body.is_active)
    except DomainException as e:
        raise to_http_error(e, get_request_id(request))
    return RuleResponse.model_validate(rule)


@router.post("/rules/{rule_id}/activate", response_model=RuleResponse)
def activate_rule(rule_id: str, request: Request, catalog: RuleCatalogService = Depends(get_rule_catalog)):
    try:
        rule = catalog.set_active(_parse_id(rule_id), True)
    except DomainException as e:
        raise to_http_error(e, get_request_id(request))
    return RuleResponse.model_validate(rule)


@router.post("/rules/{rule_id}/deactivate", response_model=RuleResponse)
def deactivate_rule(rule_id: str, request: Request, catalog: RuleCatalogService = Depends(get_rule_catalog)):
    try:
        rule = catalog.set_active(_parse_id(rule_id), False)
    except DomainException as e:
        raise to_http_error(e, get_request_id(request))
    return RuleResponse.model_validate(rule)


@router.post("/rules/{rule_id}/supersede", response_model=RuleResponse, status_code=201)
def supersede_rule(
    rule_id: str,
    request_body: SupersedeRuleRequest,
    request: Request,
    catalog: RuleCatalogService = Depends(get_rule_catalog),
):
    """Publish a new version of a rule; the old version is deactivated, not edited"""
    try:
        rule = catalog.supersede(_parse_id(rule_id), request_body.model_dump(exclude_unset=True))
    except DomainException as e:
        raise to_http_error(e, get_request_id(request))
    return RuleResponse.model_validate(rule)
