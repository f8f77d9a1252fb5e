"""Periodic credit ledger diagnostics and webhook maintenance."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Dict, Optional

from celery import shared_task
from django.conf import settings
from django.utils import timezone

from credits.models import WebhookEventLog, WebhookFailure
from credits.observability.logging import log_credit_event
from credits.observability.metrics import LEDGER_HEALTH_GAUGE
from credits.services import build_reconciliation_service, build_webhook_processor
from credits.services.reconciliation import Drift

logger = logging.getLogger(__name__)


@shared_task(queue="credits")
def report_ledger_health() -> Dict[str, object]:
    """Publish drift counts as gauges. Read-only: nothing is repaired here."""

    service = build_reconciliation_service()
    snapshot = service.system_health_snapshot()
    drifts = service.detect_drift()

    counts = {kind: 0 for kind in (Drift.ORPHANED_RECHARGE, Drift.STALE_PENDING, Drift.NEGATIVE_BALANCE, Drift.BALANCE_MISMATCH)}
    for drift in drifts:
        counts[drift.kind] += 1
    counts["unresolved_webhook_failures"] = WebhookFailure.objects.filter(resolved_at__isnull=True).count()

    for kind, value in counts.items():
        LEDGER_HEALTH_GAUGE.labels(kind=kind).set(value)

    if not snapshot.healthy or any(counts.values()):
        log_credit_event(
            message="ledger.needs_attention",
            extra={"status": snapshot.status, **counts},
            level=logging.WARNING,
        )
    else:
        logger.info("Ledger health check passed: %s", snapshot.as_dict())

    return {"status": snapshot.status, **counts}


@shared_task(queue="credits")
def replay_webhook_failures(limit: Optional[int] = 50) -> Dict[str, int]:
    """Retry unresolved retryable webhook failures."""

    event_ids = list(
        WebhookFailure.objects.filter(resolved_at__isnull=True, retryable=True)
        .order_by("created_at")
        .values_list("event_id", flat=True)[: limit or None]
    )
    if not event_ids:
        return {"total": 0, "succeeded": 0, "failed": 0}

    # Background replays must not block a worker on backoff sleeps.
    summary = build_webhook_processor(sleep=lambda _delay: None).replay_failures(event_ids=event_ids)
    return {"total": summary.total, "succeeded": summary.succeeded, "failed": summary.failed}


@shared_task(queue="maintenance")
def cleanup_webhook_event_logs(days: Optional[int] = None) -> int:
    """Remove settled webhook audit rows older than ``days`` days."""

    days = days or getattr(settings, "CREDIT_WEBHOOK_LOG_RETENTION_DAYS", 30)
    cutoff = timezone.now() - timedelta(days=days)
    deleted, _ = WebhookEventLog.objects.filter(
        status__in=(
            WebhookEventLog.Status.PROCESSED,
            WebhookEventLog.Status.IGNORED,
            WebhookEventLog.Status.DUPLICATE,
        ),
        processed_at__lt=cutoff,
    ).delete()

    logger.info("Cleaned up %s settled webhook events older than %s days.", deleted, days)
    return deleted
