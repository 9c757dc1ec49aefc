"""Prometheus metrics for recalculation runs, receipt transitions and webhook delivery"""

from typing import Iterable

from prometheus_client import Counter, Histogram

# Recalculation metrics
recalculation_counter = Counter(
    "billing_recalculation_total",
    "Receipt recalculations",
    ["scope", "outcome"],  # receipt | visit ; success | refused | failed
)

recalculation_duration_histogram = Histogram(
    "billing_recalculation_duration_seconds",
    "Time spent rebuilding a receipt inside its transaction",
    ["scope"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

bonus_application_counter = Counter(
    "billing_bonus_applications_total",
    "Bonus applications written by category",
    ["category"],
)

skipped_rule_counter = Counter(
    "billing_skipped_rules_total",
    "Malformed bonus rules skipped during evaluation",
    ["rule_code"],
)

# Lifecycle metrics
transition_counter = Counter(
    "billing_receipt_transition_total",
    "Receipt lifecycle transitions",
    ["operation", "outcome"],  # outcome: success or the refusal reason code
)

# Webhook metrics
webhook_latency_histogram = Histogram(
    "receipt_webhook_latency_seconds",
    "Receipt event webhook response time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

webhook_failure_counter = Counter(
    "receipt_webhook_failures_total",
    "Failed receipt event deliveries",
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_recalculation(scope: str, outcome: str, duration_seconds: float, categories: Iterable[str] = ()) -> None:
    recalculation_counter.labels(scope=scope, outcome=outcome).inc()
    if outcome == "success":
        recalculation_duration_histogram.labels(scope=scope).observe(duration_seconds)
    for category in categories:
        bonus_application_counter.labels(category=category).inc()


def record_skipped_rules(rule_codes: Iterable[str]) -> None:
    for code in rule_codes:
        skipped_rule_counter.labels(rule_code=code).inc()


def record_transition(operation: str, outcome: str) -> None:
    transition_counter.labels(operation=operation, outcome=outcome).inc()
