"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pythonjsonlogger import jsonlogger

from homecare_billing.config import settings


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding timestamp, level and service name"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging on stdout"""
    logger = logging.getLogger()
    logger.setLevel(level)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s"))
    logger.addHandler(handler)


def log_recalculation(
    receipt_id: str,
    patient_id: str,
    year: int,
    month: int,
    visit_count: int,
    application_count: int,
    grand_total_points: int,
    has_errors: bool,
    duration_ms: float,
    scope: str = "receipt",
) -> None:
    """Log recalculation outcome for auditing billing runs"""
    logging.info(
        "Recalculation completed",
        extra={
            "receipt_id": receipt_id,
            "patient_id": patient_id,
            "target_period": f"{year}-{month:02d}",
            "step": f"recalculate_{scope}",
            "visit_count": visit_count,
            "application_count": application_count,
            "grand_total_points": grand_total_points,
            "has_errors": has_errors,
            "duration_ms": duration_ms,
        },
    )


def log_transition(receipt_id: str, operation: str, outcome: str, reason: Optional[str] = None) -> None:
    """Log a lifecycle transition attempt; refusals carry their reason code"""
    level = logging.INFO if outcome == "success" else logging.WARNING
    logging.log(
        level,
        f"Receipt {operation} {outcome}",
        extra={
            "receipt_id": receipt_id,
            "step": operation,
            "outcome": outcome,
            "reason_code": reason,
        },
    )
