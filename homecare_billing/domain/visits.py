"""
Canonical billable-visit definition.

Recalculation, the incremental refresh and the read-only listing all go
through ``billable_in_order``; nothing else may filter or sort visits for
billing purposes.
"""

from collections import defaultdict
from datetime import date, datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from uuid import UUID

from homecare_billing.domain.models import EvaluationContext, FacilityProfile, PatientProfile, Visit
from homecare_billing.utils.date_utils import DEFAULT_BILLING_TIMEZONE, to_billing_clock

BILLABLE_STATUSES = frozenset({"completed", "reviewed"})


def is_billable(visit: Visit) -> bool:
    """Completed or reviewed, and not soft-deleted"""
    return visit.status in BILLABLE_STATUSES and visit.deleted_at is None


def visit_sort_key(visit: Visit, timezone: str = DEFAULT_BILLING_TIMEZONE) -> Tuple[date, int, datetime, str]:
    """Visit date, then start time with missing starts last, then record id"""
    if visit.actual_start is None:
        return (visit.visit_date, 1, datetime.min, str(visit.record_id))
    return (visit.visit_date, 0, to_billing_clock(visit.actual_start, timezone), str(visit.record_id))


def billable_in_order(visits: Iterable[Visit], timezone: str = DEFAULT_BILLING_TIMEZONE) -> List[Visit]:
    return sorted((v for v in visits if is_billable(v)), key=lambda v: visit_sort_key(v, timezone))


def daily_ordinals(ordered_visits: Sequence[Visit]) -> Dict[UUID, int]:
    """1-based position of each visit among its patient's visits that day"""
    seen: Dict[Tuple[UUID, date], int] = defaultdict(int)
    ordinals = {}
    for visit in ordered_visits:
        key = (visit.patient_id, visit.visit_date)
        seen[key] += 1
        ordinals[visit.record_id] = seen[key]
    return ordinals


def build_contexts(
    month_visits: Iterable[Visit],
    patient: PatientProfile,
    facility: FacilityProfile,
    patient_history: Iterable[Visit] = (),
    is_recalculation_pass: bool = True,
    only_record_id: Optional[UUID] = None,
    building_occupancy: Optional[Mapping[date, int]] = None,
    timezone: str = DEFAULT_BILLING_TIMEZONE,
) -> List[EvaluationContext]:
    """
    Build evaluation contexts in canonical order.

    ``month_visits`` are the receipt's visits; ineligible ones are dropped
    here. ``patient_history`` feeds rolling-window and same-day counts and
    may span other facilities and the preceding weeks. ``only_record_id``
    restricts the output to one visit for incremental updates while keeping
    ordering flags computed over the whole month. ``building_occupancy``
    maps a date to the number of patients in the patient's building the
    facility visits that day.
    """
    ordered = billable_in_order(month_visits, timezone)
    history = tuple(billable_in_order(patient_history, timezone)) or tuple(ordered)
    ordinals = daily_ordinals(history)
    first_id = ordered[0].record_id if ordered else None
    month_tuple = tuple(ordered)
    occupancy = building_occupancy or {}

    contexts = []
    for visit in ordered:
        if only_record_id is not None and visit.record_id != only_record_id:
            continue
        contexts.append(
            EvaluationContext(
                visit=visit,
                patient=patient,
                facility=facility,
                is_first_record_of_month=visit.record_id == first_id,
                is_recalculation_pass=is_recalculation_pass,
                daily_visit_ordinal=ordinals.get(visit.record_id, 1),
                building_occupancy=max(1, occupancy.get(visit.visit_date, 1)),
                month_visits=month_tuple,
                patient_history=history,
                timezone=timezone,
            )
        )
    return contexts
