"""Prometheus metrics helpers for the credit domain."""
from __future__ import annotations

from prometheus_client import Counter, Gauge

WEBHOOK_EVENT_COUNT = Counter(
    "credits_webhook_events_total",
    "Stripe webhook deliveries by event type and outcome",
    labelnames=("event_type", "outcome"),
)

WEBHOOK_RETRY_COUNT = Counter(
    "credits_webhook_retries_total",
    "Retried webhook handling attempts",
    labelnames=("event_type",),
)

WEBHOOK_DEAD_LETTER_COUNT = Counter(
    "credits_webhook_dead_letter_total",
    "Total dead-lettered Stripe webhook events",
    labelnames=("event_type", "reason"),
)

CREDIT_CONSUMPTION_COUNT = Counter(
    "credits_consumption_total",
    "Credit consumption attempts by action type and result",
    labelnames=("action_type", "result"),
)

RECHARGE_COMPLETION_COUNT = Counter(
    "credits_recharge_completion_total",
    "Recharge completion calls by result",
    labelnames=("result",),
)

LEDGER_HEALTH_GAUGE = Gauge(
    "credits_ledger_health_issues",
    "Open ledger consistency issues found by the last health snapshot",
    labelnames=("kind",),
)
