from datetime import timedelta

import pytest
from django.utils import timezone

from credits.models import CreditRecharge, WebhookEventLog, WebhookFailure
from credits.tasks import cleanup_webhook_event_logs, replay_webhook_failures, report_ledger_health
from credits.tests.helpers import payment_succeeded_event


@pytest.mark.django_db
def test_report_ledger_health_counts_drift_without_repairing(patched_gateway, ledger, user, package, pending_recharge):
    CreditRecharge.objects.create(
        user=user,
        package=package,
        amount=100,
        price=999,
        status=CreditRecharge.Status.COMPLETED,
        payment_intent_id="pi_orphan",
        idempotency_key="orphan",
    )

    report = report_ledger_health()

    assert report["status"] == "needs_attention"
    assert report["orphaned_recharge"] == 1
    assert report["stale_pending_recharge"] == 0
    assert report["unresolved_webhook_failures"] == 0
    assert ledger.get_balance(user.pk).balance == 0


@pytest.mark.django_db
def test_report_ledger_health_when_clean(patched_gateway):
    report = report_ledger_health()

    assert report["status"] == "healthy"


@pytest.mark.django_db
def test_replay_task_skips_non_retryable_failures(patched_gateway, ledger, user, pending_recharge):
    event = payment_succeeded_event(pending_recharge, event_id="evt_retry")
    WebhookFailure.objects.create(
        event_id="evt_retry", event_type=event["type"], payload=event, failure_reason="timeout", retryable=True
    )
    WebhookFailure.objects.create(
        event_id="evt_manual", event_type=event["type"], payload=event, failure_reason="unmapped", retryable=False
    )

    result = replay_webhook_failures()

    assert result == {"total": 1, "succeeded": 1, "failed": 0}
    assert ledger.get_balance(user.pk).balance == 100
    assert WebhookFailure.objects.get(event_id="evt_manual").resolved_at is None


@pytest.mark.django_db
def test_replay_task_with_empty_queue(patched_gateway):
    assert replay_webhook_failures() == {"total": 0, "succeeded": 0, "failed": 0}


@pytest.mark.django_db
def test_cleanup_removes_only_old_settled_events():
    old = timezone.now() - timedelta(days=45)
    WebhookEventLog.objects.create(event_id="evt_old", status=WebhookEventLog.Status.PROCESSED, processed_at=old)
    WebhookEventLog.objects.create(event_id="evt_old_failed", status=WebhookEventLog.Status.FAILED, processed_at=old)
    WebhookEventLog.objects.create(
        event_id="evt_recent", status=WebhookEventLog.Status.PROCESSED, processed_at=timezone.now()
    )

    deleted = cleanup_webhook_event_logs(days=30)

    assert deleted == 1
    assert set(WebhookEventLog.objects.values_list("event_id", flat=True)) == {"evt_old_failed", "evt_recent"}
