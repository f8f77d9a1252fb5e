import threading
from datetime import timedelta

import pytest
from django.db import IntegrityError, connections, transaction
from django.db.models import Sum
from django.utils import timezone

from credits.models import CreditBalance, CreditRecharge, CreditTransaction, WebhookFailure
from credits.services.reconciliation import Drift, ReconciliationService
from credits.services.recharges import RechargeNotFound
from credits.tests.helpers import TEST_ACTION, payment_succeeded_event


@pytest.fixture
def service(ledger, recharges, processor):
    return ReconciliationService(ledger=ledger, recharges=recharges, webhook_processor=processor)


@pytest.fixture
def orphaned_recharge(user, package):
    """A recharge marked completed whose ledger write never landed."""

    return CreditRecharge.objects.create(
        user=user,
        package=package,
        amount=100,
        price=999,
        status=CreditRecharge.Status.COMPLETED,
        payment_intent_id="pi_orphan",
        idempotency_key="orphan-1",
        completed_at=timezone.now(),
    )


@pytest.mark.django_db
def test_orphaned_recharge_is_found_and_repaired_once(service, ledger, user, orphaned_recharge):
    assert list(service.find_orphaned_recharges()) == [orphaned_recharge]

    first = service.repair_orphaned_recharge(orphaned_recharge.pk)
    second = service.repair_orphaned_recharge(orphaned_recharge.pk)

    assert first.duplicate is False
    assert first.new_balance == 100
    assert second.duplicate is True
    assert ledger.get_balance(user.pk).balance == 100
    assert CreditTransaction.objects.filter(related_recharge=orphaned_recharge).count() == 1
    assert list(service.find_orphaned_recharges()) == []


@pytest.mark.django_db
def test_credited_and_pending_recharges_are_not_orphans(service, recharges, pending_recharge, package, user):
    credited = recharges.create_recharge_intent(user.pk, package.pk, "key-2").recharge
    recharges.complete_recharge(credited.pk, credited.payment_intent_id)

    assert list(service.find_orphaned_recharges()) == []


@pytest.mark.django_db
def test_orphans_outside_lookback_window_are_ignored(service, orphaned_recharge):
    CreditRecharge.objects.filter(pk=orphaned_recharge.pk).update(created_at=timezone.now() - timedelta(days=31))

    assert list(service.find_orphaned_recharges()) == []
    assert list(service.find_orphaned_recharges(lookback=timedelta(days=60))) == [orphaned_recharge]


@pytest.mark.django_db
def test_find_orphaned_recharges_filters_by_user(service, orphaned_recharge, other_user):
    assert list(service.find_orphaned_recharges(user_id=other_user.pk)) == []


@pytest.mark.django_db
def test_repair_orphaned_recharges_batch(service, ledger, user, orphaned_recharge):
    summary = service.repair_orphaned_recharges()

    assert summary.checked == 1
    assert len(summary.repaired) == 1
    assert summary.failed == []
    assert ledger.get_balance(user.pk).balance == 100


@pytest.mark.django_db
@pytest.mark.parametrize("recharge_id", ["00000000-0000-0000-0000-000000000000", "not-a-uuid"])
def test_repair_unknown_recharge(service, recharge_id):
    with pytest.raises(RechargeNotFound):
        service.repair_orphaned_recharge(recharge_id)


@pytest.mark.django_db
def test_stale_pending_recharges(service, pending_recharge):
    assert list(service.find_stale_pending_recharges()) == []

    CreditRecharge.objects.filter(pk=pending_recharge.pk).update(created_at=timezone.now() - timedelta(minutes=11))

    assert list(service.find_stale_pending_recharges()) == [pending_recharge]


@pytest.mark.django_db
def test_recalculate_balance_restores_snapshot_from_log(service, ledger, user, action_config):
    ledger.add_credits(user.pk, 100, CreditTransaction.TransactionType.BONUS)
    ledger.consume_credits(user.pk, TEST_ACTION)
    CreditBalance.objects.filter(user=user).update(balance=80, total_recharged=81)

    drift = list(service.find_balance_drift())
    assert [row.user_id for row in drift] == [user.pk]

    first = service.recalculate_balance(user.pk)
    second = service.recalculate_balance(user.pk)

    assert first.previous_balance == 80
    assert first.balance == 99
    assert first.total_recharged == 100
    assert first.total_consumed == 1
    assert first.changed is True
    assert second.as_dict() == {**first.as_dict(), "previous_balance": 99, "changed": False}
    assert list(service.find_balance_drift()) == []
    assert CreditTransaction.objects.filter(user=user).count() == 2


@pytest.mark.django_db
def test_recalculate_balance_for_user_without_activity(service, user):
    result = service.recalculate_balance(user.pk)

    assert result.balance == 0
    assert result.changed is False


@pytest.mark.django_db
def test_health_snapshot(service, orphaned_recharge, pending_recharge):
    snapshot = service.system_health_snapshot()
    assert snapshot.orphaned_recharges == 1
    assert snapshot.stale_pending_recharges == 0
    assert snapshot.recent_recharges == 2
    assert snapshot.status == "needs_attention"

    service.repair_orphaned_recharge(orphaned_recharge.pk)

    snapshot = service.system_health_snapshot()
    assert snapshot.healthy is True
    assert snapshot.as_dict()["status"] == "healthy"


@pytest.mark.django_db
def test_detect_drift_pairs_each_issue_with_a_repair(service, orphaned_recharge, pending_recharge):
    CreditRecharge.objects.filter(pk=pending_recharge.pk).update(created_at=timezone.now() - timedelta(hours=1))

    drifts = {drift.kind: drift for drift in service.detect_drift()}

    assert drifts[Drift.ORPHANED_RECHARGE].repair_action == "fix_specific_recharge"
    assert drifts[Drift.ORPHANED_RECHARGE].recharge_id == orphaned_recharge.pk
    assert drifts[Drift.STALE_PENDING].repair_action == "retry_failed_payments"
    assert Drift.BALANCE_MISMATCH not in drifts


@pytest.mark.django_db
def test_retry_failed_payments_replays_stored_failures(service, ledger, user, pending_recharge):
    event = payment_succeeded_event(pending_recharge, event_id="evt_stored")
    WebhookFailure.objects.create(
        event_id="evt_stored",
        event_type=event["type"],
        payload=event,
        failure_reason="OperationalError: connection reset",
        retryable=True,
    )

    summary = service.retry_failed_payments()

    assert summary.total == 1
    assert summary.succeeded == 1
    assert ledger.get_balance(user.pk).balance == 100
    assert WebhookFailure.objects.get(event_id="evt_stored").resolved_at is not None


@pytest.mark.django_db(transaction=True)
def test_recalculate_balance_racing_appends_keeps_snapshot_equal_to_log(service, ledger, user):
    ledger.add_credits(user.pk, 10, CreditTransaction.TransactionType.BONUS)
    barrier = threading.Barrier(2)
    errors = []

    def _append():
        try:
            barrier.wait()
            for _ in range(20):
                ledger.add_credits(user.pk, 1, CreditTransaction.TransactionType.BONUS)
        except Exception as exc:
            errors.append(exc)
        finally:
            connections.close_all()

    def _recalculate():
        try:
            barrier.wait()
            for _ in range(20):
                service.recalculate_balance(user.pk)
        except Exception as exc:
            errors.append(exc)
        finally:
            connections.close_all()

    threads = [threading.Thread(target=_append), threading.Thread(target=_recalculate)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    balance = CreditBalance.objects.get(user=user)
    assert balance.balance == 30
    assert balance.total_recharged == 30
    assert CreditTransaction.objects.filter(user=user).aggregate(total=Sum("amount"))["total"] == 30
    assert list(service.find_balance_drift()) == []
    assert service.recalculate_balance(user.pk).changed is False


@pytest.mark.django_db
def test_negative_balance_is_rejected_by_the_database(service, ledger, user):
    ledger.add_credits(user.pk, 5, CreditTransaction.TransactionType.BONUS)

    with pytest.raises(IntegrityError), transaction.atomic():
        CreditBalance.objects.filter(user=user).update(balance=-1, total_consumed=6)

    assert list(service.find_negative_balances()) == []
    assert Drift.NEGATIVE_BALANCE not in {drift.kind for drift in service.detect_drift()}
