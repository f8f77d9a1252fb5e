import pytest
from django.db import OperationalError

from credits.models import CreditRecharge, CreditTransaction, WebhookEventLog, WebhookFailure
from credits.services.webhooks import HandlerResult
from credits.tests.helpers import payment_succeeded_event, subscription_event


@pytest.mark.django_db
def test_payment_succeeded_completes_recharge(processor, ledger, user, pending_recharge):
    outcome = processor.process(payment_succeeded_event(pending_recharge))

    assert outcome.status == HandlerResult.PROCESSED
    assert outcome.http_status == 200
    assert outcome.attempts == 1
    assert ledger.get_balance(user.pk).balance == 100

    log = WebhookEventLog.objects.get(event_id="evt_paid_1")
    assert log.status == WebhookEventLog.Status.PROCESSED


@pytest.mark.django_db
def test_redelivered_payment_is_reported_as_duplicate(processor, ledger, user, pending_recharge):
    event = payment_succeeded_event(pending_recharge)

    first = processor.process(event)
    second = processor.process(event)

    assert first.status == HandlerResult.PROCESSED
    assert second.status == HandlerResult.DUPLICATE
    assert second.http_status == 200
    assert ledger.get_balance(user.pk).balance == 100
    assert CreditTransaction.objects.filter(related_recharge=pending_recharge).count() == 1
    # Every delivery is logged; there is no event-id short circuit.
    assert WebhookEventLog.objects.filter(event_id="evt_paid_1").count() == 2


@pytest.mark.django_db
def test_payment_without_recharge_metadata_is_ignored(processor, ledger, user, pending_recharge):
    event = payment_succeeded_event(pending_recharge, metadata={"type": "invoice"})

    outcome = processor.process(event)

    assert outcome.status == HandlerResult.IGNORED
    assert ledger.get_balance(user.pk).balance == 0


@pytest.mark.django_db
def test_credit_recharge_payment_without_recharge_id_is_dead_lettered(processor, pending_recharge):
    event = payment_succeeded_event(pending_recharge, metadata={"type": "credit_recharge"})

    outcome = processor.process(event)

    assert outcome.status == HandlerResult.DEAD_LETTER
    assert outcome.http_status == 200
    failure = WebhookFailure.objects.get(event_id="evt_paid_1")
    assert failure.retryable is False
    assert "MissingRechargeReference" in failure.failure_reason


@pytest.mark.django_db
def test_unknown_recharge_is_dead_lettered_without_retry(processor, sleeps, pending_recharge):
    event = payment_succeeded_event(
        pending_recharge,
        metadata={"type": "credit_recharge", "rechargeId": "00000000-0000-0000-0000-000000000000"},
    )

    outcome = processor.process(event)

    assert outcome.status == HandlerResult.DEAD_LETTER
    assert sleeps == []
    failure = WebhookFailure.objects.get(event_id="evt_paid_1")
    assert failure.recharge_id == "00000000-0000-0000-0000-000000000000"
    assert failure.payment_intent_id == pending_recharge.payment_intent_id
    assert WebhookEventLog.objects.get(event_id="evt_paid_1").status == WebhookEventLog.Status.DEAD_LETTER


@pytest.mark.django_db
def test_mismatched_payment_reference_is_not_credited(processor, ledger, user, pending_recharge):
    event = payment_succeeded_event(pending_recharge, payment_intent_id="pi_forged")

    outcome = processor.process(event)

    assert outcome.status == HandlerResult.DEAD_LETTER
    assert ledger.get_balance(user.pk).balance == 0


@pytest.mark.django_db
def test_transient_failure_is_retried_with_backoff(monkeypatch, processor, sleeps, ledger, user, pending_recharge):
    original = processor.recharges.complete_recharge
    calls = []

    def flaky(recharge_id, payment_intent_id):
        calls.append(recharge_id)
        if len(calls) < 3:
            raise OperationalError("database is locked")
        return original(recharge_id, payment_intent_id)

    monkeypatch.setattr(processor.recharges, "complete_recharge", flaky)

    outcome = processor.process(payment_succeeded_event(pending_recharge))

    assert outcome.status == HandlerResult.PROCESSED
    assert outcome.attempts == 3
    assert sleeps == [1.0, 2.0]
    assert ledger.get_balance(user.pk).balance == 100


@pytest.mark.django_db
def test_exhausted_retries_store_failure_and_return_server_error(monkeypatch, processor, sleeps, pending_recharge):
    def always_fails(recharge_id, payment_intent_id):
        raise OperationalError("database is locked")

    monkeypatch.setattr(processor.recharges, "complete_recharge", always_fails)

    outcome = processor.process(payment_succeeded_event(pending_recharge))

    assert outcome.status == HandlerResult.ERROR
    assert outcome.http_status == 500
    assert outcome.attempts == 3
    assert sleeps == [1.0, 2.0]
    failure = WebhookFailure.objects.get(event_id="evt_paid_1")
    assert failure.retryable is True
    assert failure.resolved_at is None
    assert WebhookEventLog.objects.get(event_id="evt_paid_1").status == WebhookEventLog.Status.FAILED


@pytest.mark.django_db
def test_replay_resolves_stored_failure(monkeypatch, processor, ledger, user, pending_recharge):
    original = processor.recharges.complete_recharge

    def unavailable(recharge_id, payment_intent_id):
        raise OperationalError("server closed the connection")

    monkeypatch.setattr(processor.recharges, "complete_recharge", unavailable)
    processor.process(payment_succeeded_event(pending_recharge))
    monkeypatch.setattr(processor.recharges, "complete_recharge", original)

    summary = processor.replay_failures()

    assert summary.total == 1
    assert summary.succeeded == 1
    assert WebhookFailure.objects.get(event_id="evt_paid_1").resolved_at is not None
    assert ledger.get_balance(user.pk).balance == 100


@pytest.mark.django_db
def test_payment_canceled_marks_recharge_failed(processor, pending_recharge):
    event = payment_succeeded_event(pending_recharge, event_id="evt_cancel_1")
    event["type"] = "payment_intent.canceled"
    event["data"]["object"]["cancellation_reason"] = "abandoned"

    outcome = processor.process(event)

    pending_recharge.refresh_from_db()
    assert outcome.status == HandlerResult.PROCESSED
    assert pending_recharge.status == CreditRecharge.Status.FAILED
    assert pending_recharge.failure_reason == "abandoned"


@pytest.mark.django_db
def test_unsupported_event_is_ignored(processor):
    outcome = processor.process({"id": "evt_other", "type": "charge.refunded", "data": {"object": {"id": "ch_1"}}})

    assert outcome.status == HandlerResult.IGNORED
    assert outcome.http_status == 200


@pytest.mark.django_db
def test_malformed_payment_event_is_dead_lettered(processor):
    outcome = processor.process({"id": "evt_bad", "type": "payment_intent.succeeded", "data": {"object": "oops"}})

    assert outcome.status == HandlerResult.DEAD_LETTER
    assert WebhookFailure.objects.get(event_id="evt_bad").retryable is False


def _with_subscription_item(event, **changes):
    event["data"]["object"].update(changes)
    return event


@pytest.mark.django_db
@pytest.mark.parametrize(
    "event",
    [
        {"id": "evt_shape", "type": "payment_intent.succeeded", "data": ["x"]},
        {"id": "evt_shape", "type": "customer.subscription.created", "data": "oops"},
        _with_subscription_item(subscription_event(event_id="evt_shape"), items=["x"]),
        _with_subscription_item(subscription_event(event_id="evt_shape"), items={"data": "x"}),
        _with_subscription_item(subscription_event(event_id="evt_shape"), items={"data": ["x"]}),
        _with_subscription_item(subscription_event(event_id="evt_shape"), items={"data": [{"price": "price_1"}]}),
        _with_subscription_item(
            subscription_event(event_id="evt_shape"),
            items={"data": [{"price": {"id": "price_1", "recurring": "month"}}]},
        ),
    ],
    ids=["data-list", "data-string", "items-list", "items-data-string", "item-string", "price-string", "recurring-string"],
)
def test_wrongly_shaped_event_is_dead_lettered(processor, event):
    outcome = processor.process(event)

    assert outcome.status == HandlerResult.DEAD_LETTER
    assert outcome.http_status == 200
    failure = WebhookFailure.objects.get(event_id="evt_shape")
    assert failure.retryable is False
    assert "MalformedEvent" in failure.failure_reason
    assert WebhookEventLog.objects.get(event_id="evt_shape").status == WebhookEventLog.Status.DEAD_LETTER
