"""Visit endpoints - billable listing and incremental bonus refresh"""

import uuid
from fastapi import APIRouter, Depends, HTTPException, Query, Request

from homecare_billing.api.dependencies import get_lifecycle_manager, get_request_id, to_http_error
from homecare_billing.api.v1.schemas import ReceiptResponse, VisitListResponse, VisitSchema
from homecare_billing.domain.exceptions import DomainException
from homecare_billing.services.receipt_lifecycle import ReceiptLifecycleManager

router = APIRouter()


@router.get("/visits", response_model=VisitListResponse)
def list_billable_visits(
    patient_id: uuid.UUID = Query(..., description="Patient identifier"),
    facility_id: uuid.UUID = Query(..., description="Facility identifier"),
    year: int = Query(..., ge=2000, le=2100),
    month: int = Query(..., ge=1, le=12),
    manager: ReceiptLifecycleManager = Depends(get_lifecycle_manager),
):
    """
    Billable visits for a month in the order recalculation uses.

    Returns:
        Visits with the first-record-of-month flag set on exactly one entry
    """
    visits = manager.list_billable_visits(patient_id, facility_id, year, month)
    return VisitListResponse(
        patient_id=patient_id,
        facility_id=facility_id,
        year=year,
        month=month,
        visits=[
            VisitSchema(
                record_id=v.record_id,
                visit_date=v.visit_date,
                status=v.status,
                actual_start=v.actual_start,
                actual_end=v.actual_end,
                is_first_record_of_month=i == 0,
                is_terminal_care=v.is_terminal_care,
                is_discharge_date=v.is_discharge_date,
                is_emergency=v.is_emergency,
            )
            for i, v in enumerate(visits)
        ],
    )


@router.post("/visits/{record_id}/refresh", response_model=ReceiptResponse)
def refresh_visit_bonuses(
    record_id: str,
    request: Request,
    manager: ReceiptLifecycleManager = Depends(get_lifecycle_manager),
):
    """Re-evaluate bonuses for one edited visit and re-aggregate its receipt"""
    try:
        record_uuid = uuid.UUID(record_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid visit record ID format")

    try:
        receipt = manager.refresh_visit(record_uuid)
    except DomainException as e:
        raise to_http_error(e, get_request_id(request))
    return ReceiptResponse.model_validate(receipt)
