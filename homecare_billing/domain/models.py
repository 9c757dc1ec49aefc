"""Domain models - pure Python dataclasses representing billing entities"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, FrozenSet, List, Optional, Tuple
from uuid import UUID

from homecare_billing.utils.date_utils import DEFAULT_BILLING_TIMEZONE, month_bounds

INSURANCE_MEDICAL = "medical"
INSURANCE_LONG_TERM_CARE = "long_term_care"
INSURANCE_TYPES = (INSURANCE_MEDICAL, INSURANCE_LONG_TERM_CARE)

# Visit flags a rule may count or test
VISIT_FLAGS = ("is_terminal_care", "is_discharge_date", "is_emergency", "is_first_visit_of_plan")

# Receipt subtotal buckets; always present on a snapshot, zero when unused
CATEGORIES = (
    "special_management",
    "emergency",
    "long_duration",
    "multiple_visit",
    "same_building_reduction",
    "terminal_care",
    "time_of_day",
    "support_system",
    "discharge",
    "other",
)


@dataclass(frozen=True)
class BillingPeriod:
    """Calendar month a receipt covers"""

    year: int
    month: int

    @property
    def start(self) -> date:
        return month_bounds(self.year, self.month)[0]

    @property
    def end(self) -> date:
        return month_bounds(self.year, self.month)[1]

    @property
    def midpoint(self) -> date:
        return date(self.year, self.month, 15)

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    @classmethod
    def of(cls, day: date) -> "BillingPeriod":
        return cls(year=day.year, month=day.month)


@dataclass(frozen=True)
class Visit:
    """Visit record as read from the visit record store"""

    record_id: UUID
    patient_id: UUID
    facility_id: UUID
    visit_date: date
    status: str  # "draft", "completed" or "reviewed"
    nurse_id: Optional[UUID] = None
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    is_terminal_care: bool = False
    is_discharge_date: bool = False
    is_emergency: bool = False
    is_first_visit_of_plan: bool = False

    def flag(self, name: str) -> bool:
        if name not in VISIT_FLAGS:
            raise ValueError(f"Unknown visit flag: {name}")
        return bool(getattr(self, name))


@dataclass(frozen=True)
class SpecialManagementWindow:
    """Date-bounded special management eligibility, [start, end)"""

    category: str
    start: date
    end: Optional[date] = None
    tier: Optional[str] = None

    def covers(self, day: date) -> bool:
        return self.start <= day and (self.end is None or day < self.end)


@dataclass(frozen=True)
class PatientProfile:
    """Patient attributes the billing core consumes"""

    patient_id: UUID
    insurance_type: str
    patient_number: Optional[str] = None
    full_name: Optional[str] = None
    date_of_birth: Optional[date] = None
    building_id: Optional[UUID] = None
    death_date: Optional[date] = None
    death_place_code: Optional[str] = None
    special_management: Tuple[SpecialManagementWindow, ...] = ()

    def age_on(self, day: date) -> Optional[int]:
        """Completed years on ``day``; None when the date of birth is unknown"""
        if self.date_of_birth is None:
            return None
        birth = self.date_of_birth
        return day.year - birth.year - ((day.month, day.day) < (birth.month, birth.day))


@dataclass(frozen=True)
class FacilityProfile:
    """Facility capability flags relevant to bonus rules"""

    facility_id: UUID
    name: Optional[str] = None
    facility_code: Optional[str] = None
    capabilities: FrozenSet[str] = frozenset()
    unit_price: Optional[Decimal] = None


@dataclass(frozen=True)
class CoveragePeriod:
    """Insurance card or doctor order validity, end inclusive"""

    start: date
    end: Optional[date] = None
    card_type: Optional[str] = None  # insurance cards only

    def covers(self, day: date) -> bool:
        return self.start <= day and (self.end is None or day <= self.end)


@dataclass(frozen=True)
class EvaluationContext:
    """Everything a rule may look at for one visit"""

    visit: Visit
    patient: PatientProfile
    facility: FacilityProfile
    is_first_record_of_month: bool
    is_recalculation_pass: bool
    daily_visit_ordinal: int = 1
    building_occupancy: int = 1  # building patients this facility visits that day, this one included
    month_visits: Tuple[Visit, ...] = ()
    patient_history: Tuple[Visit, ...] = ()
    timezone: str = DEFAULT_BILLING_TIMEZONE


@dataclass(frozen=True)
class AppliedBonus:
    """Result of one successful (visit record, bonus rule) evaluation"""

    record_id: UUID
    rule_id: UUID
    rule_code: str
    rule_version: int
    category: str
    points: int
    explanation: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ValidationIssue:
    """Single error or warning surfaced on a receipt"""

    code: str
    message: str
    field: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "field": self.field}


@dataclass
class ValidationReport:
    """Errors block confirmation, warnings do not"""

    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)


@dataclass
class ReceiptSnapshot:
    """Output of aggregation for one receipt"""

    visit_count: int
    base_visit_points: int
    category_subtotals: Dict[str, int]
    grand_total_points: int
    grand_total_amount: int
    validation: ValidationReport

    @property
    def has_errors(self) -> bool:
        return self.validation.has_errors
