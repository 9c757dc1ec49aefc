"""Receipt event webhook client with exponential backoff retry logic"""

import asyncio
import logging
from typing import Any, Dict

import httpx

from homecare_billing.config import settings
from homecare_billing.infrastructure.observability.metrics import webhook_failure_counter, webhook_latency_histogram

RECEIPT_FINALIZED = "RECEIPT_FINALIZED"
RECEIPT_REOPENED = "RECEIPT_REOPENED"
RECEIPT_SENT = "RECEIPT_SENT"

logger = logging.getLogger(__name__)


def receipt_event(event: str, receipt) -> Dict[str, Any]:
    """Event payload for a persisted MonthlyReceipt"""
    return {
        "event": event,
        "receipt_id": str(receipt.id),
        "patient_id": str(receipt.patient_id),
        "facility_id": str(receipt.facility_id),
        "target_year": receipt.target_year,
        "target_month": receipt.target_month,
        "insurance_type": receipt.insurance_type,
        "grand_total_points": receipt.grand_total_points,
        "grand_total_amount": receipt.grand_total_amount,
    }


class ReceiptEventClient:
    """Announces receipt lifecycle changes to downstream export layers"""

    def __init__(self, webhook_url: str | None = None):
        self.webhook_url = webhook_url or settings.receipt_event_webhook_url
        self.max_retries = settings.webhook_max_retries
        self.backoff_base = settings.webhook_backoff_base
        self.timeout = settings.http_timeout_seconds

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    async def send_event(self, payload: Dict[str, Any]) -> None:
        """
        POST a receipt event, retrying 5xx responses and network failures.

        Backoff doubles per attempt from ``webhook_backoff_base`` seconds.
        Does nothing when no webhook URL is configured.
        """
        if not self.enabled:
            return

        attempt = 0
        async with httpx.AsyncClient() as client:
            while attempt < self.max_retries:
                try:
                    with webhook_latency_histogram.time():
                        response = await client.post(self.webhook_url, json=payload, timeout=self.timeout)
                        response.raise_for_status()
                        return

                except httpx.HTTPStatusError as e:
                    attempt += 1
                    webhook_failure_counter.inc()
                    if e.response.status_code < 500 or attempt >= self.max_retries:
                        logger.error(
                            f"Receipt event delivery failed: {e}",
                            extra={"event": payload.get("event"), "receipt_id": payload.get("receipt_id")},
                        )
                        raise

                except httpx.RequestError as e:
                    attempt += 1
                    webhook_failure_counter.inc()
                    if attempt >= self.max_retries:
                        logger.error(
                            f"Receipt event delivery failed: {e}",
                            extra={"event": payload.get("event"), "receipt_id": payload.get("receipt_id")},
                        )
                        raise

                await asyncio.sleep(self.backoff_base * (2 ** (attempt - 1)))
