"""Dependency injection for FastAPI endpoints"""

import logging

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from homecare_billing.domain.exceptions import (
    DomainException,
    IllegalTransitionError,
    NotFoundError,
    RecalculationFailedError,
    RuleConfigurationError,
)
from homecare_billing.infrastructure.clients.receipt_events import ReceiptEventClient
from homecare_billing.infrastructure.database.session import get_db
from homecare_billing.services.receipt_lifecycle import ReceiptLifecycleManager
from homecare_billing.services.rule_catalog import RuleCatalogService


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_lifecycle_manager(db: Session = Depends(get_db)) -> ReceiptLifecycleManager:
    return ReceiptLifecycleManager(db)


def get_rule_catalog(db: Session = Depends(get_db)) -> RuleCatalogService:
    return RuleCatalogService(db)


def get_receipt_event_client() -> ReceiptEventClient:
    """Provide receipt event webhook client instance"""
    return ReceiptEventClient()


def to_http_error(exc: DomainException, request_id: str) -> HTTPException:
    """Map a domain failure to its HTTP status"""
    if isinstance(exc, IllegalTransitionError):
        logging.warning(f"Illegal transition: {exc}", extra={"request_id": request_id, "reason_code": exc.code})
        return HTTPException(status_code=409, detail={"code": exc.code, "messages": exc.messages})
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, RuleConfigurationError):
        return HTTPException(status_code=422, detail={"rule_code": exc.rule_code, "message": str(exc)})
    if isinstance(exc, RecalculationFailedError):
        logging.error(f"Retryable failure: {exc}", extra={"request_id": request_id})
        return HTTPException(status_code=503, detail="Billing store unavailable, retry the request")
    logging.error(f"Unexpected domain error: {exc}", extra={"request_id": request_id})
    return HTTPException(status_code=500, detail="Internal server error")
