"""Pydantic schemas for API request/response validation"""

from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

InsuranceType = Literal["medical", "long_term_care"]


class RecalculateRequest(BaseModel):
    """Request body for POST /v1/receipts/recalculate"""

    patient_id: UUID
    facility_id: UUID
    year: int = Field(..., ge=2000, le=2100)
    month: int = Field(..., ge=1, le=12)
    insurance_type: InsuranceType


class FinalizeRequest(BaseModel):
    confirmed_by: Optional[str] = Field(None, description="Staff member confirming the receipt")


class IssueSchema(BaseModel):
    code: str
    message: str
    field: Optional[str] = None


class ApplicationSchema(BaseModel):
    """Single bonus applied to a visit"""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    visit_record_id: UUID
    bonus_rule_id: UUID
    rule_code: str
    rule_version: int
    category: str
    points: int
    visit_date: date
    explanation: Optional[Dict[str, Any]] = None


class ReceiptResponse(BaseModel):
    """Monthly receipt snapshot and lifecycle flags"""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    patient_id: UUID
    facility_id: UUID
    target_year: int
    target_month: int
    insurance_type: str
    visit_count: int
    base_visit_points: int
    category_subtotals: Dict[str, int]
    grand_total_points: int
    grand_total_amount: int
    is_confirmed: bool
    is_sent: bool
    has_errors: bool
    has_warnings: bool
    errors: List[IssueSchema]
    warnings: List[IssueSchema]
    confirmed_at: Optional[datetime] = None
    confirmed_by: Optional[str] = None
    sent_at: Optional[datetime] = None
    last_calculated_at: Optional[datetime] = None


class ReceiptDetailResponse(ReceiptResponse):
    """Response for GET /v1/receipts/{receipt_id}"""

    applications: List[ApplicationSchema]


class ValidationResponse(BaseModel):
    receipt_id: UUID
    errors: List[IssueSchema]
    warnings: List[IssueSchema]


class VisitSchema(BaseModel):
    """Billable visit in canonical order"""

    record_id: UUID
    visit_date: date
    status: str
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    is_first_record_of_month: bool
    is_terminal_care: bool
    is_discharge_date: bool
    is_emergency: bool


class VisitListResponse(BaseModel):
    patient_id: UUID
    facility_id: UUID
    year: int
    month: int
    visits: List[VisitSchema]


class RuleRequest(BaseModel):
    """Full rule definition"""

    name: str = Field(..., min_length=1)
    category: str
    insurance_type: InsuranceType
    facility_id: Optional[UUID] = None
    valid_from: date
    valid_to: Optional[date] = None
    points_spec: Dict[str, Any]
    conditions: Optional[List[Dict[str, Any]]] = None
    monthly_limit: Optional[int] = Field(None, ge=1)
    display_order: int = 999
    cannot_combine_with: Optional[List[str]] = None


class CreateRuleRequest(RuleRequest):
    code: str = Field(..., min_length=1)
    is_active: bool = True


class SupersedeRuleRequest(BaseModel):
    """Only the fields that change; the rest carry over from the superseded version"""

    name: Optional[str] = None
    category: Optional[str] = None
    facility_id: Optional[UUID] = None
    valid_from: Optional[date] = None
    valid_to: Optional[date] = None
    points_spec: Optional[Dict[str, Any]] = None
    conditions: Optional[List[Dict[str, Any]]] = None
    monthly_limit: Optional[int] = Field(None, ge=1)
    display_order: Optional[int] = None
    cannot_combine_with: Optional[List[str]] = None


class RuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    name: str
    version: int
    category: str
    insurance_type: str
    facility_id: Optional[UUID] = None
    valid_from: date
    valid_to: Optional[date] = None
    points_spec: Dict[str, Any]
    conditions: Optional[Any] = None  # stored list, or a single legacy object
    monthly_limit: Optional[int] = None
    display_order: int
    cannot_combine_with: Optional[List[str]] = None
    is_active: bool
    superseded_by_id: Optional[UUID] = None
