"""Monthly receipt endpoints - recalculation and the confirm/reopen/send lifecycle"""

import uuid
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response

from homecare_billing.api.dependencies import (
    get_lifecycle_manager,
    get_receipt_event_client,
    get_request_id,
    to_http_error,
)
from homecare_billing.api.v1.schemas import (
    ApplicationSchema,
    FinalizeRequest,
    IssueSchema,
    ReceiptDetailResponse,
    ReceiptResponse,
    RecalculateRequest,
    ValidationResponse,
)
from homecare_billing.domain.exceptions import DomainException
from homecare_billing.infrastructure.clients.receipt_events import (
    RECEIPT_FINALIZED,
    RECEIPT_REOPENED,
    RECEIPT_SENT,
    ReceiptEventClient,
    receipt_event,
)
from homecare_billing.services.receipt_lifecycle import ReceiptLifecycleManager

router = APIRouter()


def _parse_id(receipt_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(receipt_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid receipt ID format")


@router.post("/receipts/recalculate", response_model=ReceiptResponse)
def recalculate_receipt(
    request_body: RecalculateRequest,
    request: Request,
    manager: ReceiptLifecycleManager = Depends(get_lifecycle_manager),
):
    """
    Rebuild a receipt from its month of visits.

    Creates the receipt on first use; refused once the receipt is confirmed
    or sent.
    """
    try:
        receipt = manager.recalculate(
            request_body.patient_id,
            request_body.facility_id,
            request_body.year,
            request_body.month,
            request_body.insurance_type,
        )
    except DomainException as e:
        raise to_http_error(e, get_request_id(request))
    return ReceiptResponse.model_validate(receipt)


@router.get("/receipts/{receipt_id}", response_model=ReceiptDetailResponse)
def get_receipt(
    receipt_id: str,
    request: Request,
    manager: ReceiptLifecycleManager = Depends(get_lifecycle_manager),
):
    try:
        receipt, applications = manager.get(_parse_id(receipt_id))
    except DomainException as e:
        raise to_http_error(e, get_request_id(request))
    return ReceiptDetailResponse(
        **ReceiptResponse.model_validate(receipt).model_dump(),
        applications=[ApplicationSchema.model_validate(a) for a in applications],
    )


@router.post("/receipts/{receipt_id}/validate", response_model=ValidationResponse)
def validate_receipt(
    receipt_id: str,
    request: Request,
    manager: ReceiptLifecycleManager = Depends(get_lifecycle_manager),
):
    """Re-run validation on persisted applications; totals do not change"""
    receipt_uuid = _parse_id(receipt_id)
    try:
        report = manager.validate(receipt_uuid)
    except DomainException as e:
        raise to_http_error(e, get_request_id(request))
    return ValidationResponse(
        receipt_id=receipt_uuid,
        errors=[IssueSchema(**e.as_dict()) for e in report.errors],
        warnings=[IssueSchema(**w.as_dict()) for w in report.warnings],
    )


@router.post("/receipts/{receipt_id}/finalize", response_model=ReceiptResponse)
def finalize_receipt(
    receipt_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    request_body: FinalizeRequest | None = None,
    manager: ReceiptLifecycleManager = Depends(get_lifecycle_manager),
    events: ReceiptEventClient = Depends(get_receipt_event_client),
):
    """Confirm a receipt; refused while it has validation errors"""
    try:
        receipt = manager.finalize(
            _parse_id(receipt_id), confirmed_by=request_body.confirmed_by if request_body else None
        )
    except DomainException as e:
        raise to_http_error(e, get_request_id(request))
    background_tasks.add_task(events.send_event, receipt_event(RECEIPT_FINALIZED, receipt))
    return ReceiptResponse.model_validate(receipt)


@router.post("/receipts/{receipt_id}/reopen", response_model=ReceiptResponse)
def reopen_receipt(
    receipt_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    manager: ReceiptLifecycleManager = Depends(get_lifecycle_manager),
    events: ReceiptEventClient = Depends(get_receipt_event_client),
):
    """Return a confirmed receipt to draft; never allowed once sent"""
    try:
        receipt = manager.reopen(_parse_id(receipt_id))
    except DomainException as e:
        raise to_http_error(e, get_request_id(request))
    background_tasks.add_task(events.send_event, receipt_event(RECEIPT_REOPENED, receipt))
    return ReceiptResponse.model_validate(receipt)


@router.post("/receipts/{receipt_id}/send", response_model=ReceiptResponse)
def mark_receipt_sent(
    receipt_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    manager: ReceiptLifecycleManager = Depends(get_lifecycle_manager),
    events: ReceiptEventClient = Depends(get_receipt_event_client),
):
    try:
        receipt = manager.mark_sent(_parse_id(receipt_id))
    except DomainException as e:
        raise to_http_error(e, get_request_id(request))
    background_tasks.add_task(events.send_event, receipt_event(RECEIPT_SENT, receipt))
    return ReceiptResponse.model_validate(receipt)


@router.delete("/receipts/{receipt_id}", status_code=204)
def delete_receipt(
    receipt_id: str,
    request: Request,
    manager: ReceiptLifecycleManager = Depends(get_lifecycle_manager),
):
    """Administrative deletion; sent receipts are kept"""
    try:
        manager.delete(_parse_id(receipt_id))
    except DomainException as e:
        raise to_http_error(e, get_request_id(request))
    return Response(status_code=204)
