from io import StringIO

import pytest
from django.core.management import call_command
from django.utils import timezone

from credits.models import CreditBalance, CreditPackage, CreditRecharge, CreditTransaction, WebhookFailure
from credits.tests.helpers import payment_succeeded_event


def run(*args, **options):
    out = StringIO()
    call_command(*args, stdout=out, **options)
    return out.getvalue()


@pytest.fixture
def orphan(user, package):
    return CreditRecharge.objects.create(
        user=user,
        package=package,
        amount=100,
        price=999,
        status=CreditRecharge.Status.COMPLETED,
        payment_intent_id="pi_orphan",
        idempotency_key="orphan",
        completed_at=timezone.now(),
    )


@pytest.fixture
def stored_failure(pending_recharge):
    event = payment_succeeded_event(pending_recharge, event_id="evt_stored")
    return WebhookFailure.objects.create(
        event_id="evt_stored",
        event_type=event["type"],
        payload=event,
        failure_reason="OperationalError: connection reset",
        retryable=True,
    )


@pytest.mark.django_db
def test_reconcile_credits_reports_without_repairing(patched_gateway, ledger, user, orphan):
    output = run("reconcile_credits")

    assert "Status: needs_attention" in output
    assert "orphaned_recharge" in output
    assert ledger.get_balance(user.pk).balance == 0


@pytest.mark.django_db
def test_reconcile_credits_repairs_orphans(patched_gateway, ledger, user, orphan):
    output = run("reconcile_credits", "--repair-orphans")

    assert "Repaired 1 of 1 orphaned recharges." in output
    assert ledger.get_balance(user.pk).balance == 100


@pytest.mark.django_db
def test_reconcile_credits_recalculates_balance(patched_gateway, ledger, user):
    ledger.add_credits(user.pk, 30, CreditTransaction.TransactionType.BONUS)
    CreditBalance.objects.filter(user=user).update(balance=7, total_recharged=7)

    output = run("reconcile_credits", "--recalculate", str(user.pk))

    assert f"User {user.pk}: balance 7 -> 30" in output
    assert ledger.get_balance(user.pk).balance == 30


@pytest.mark.django_db
def test_replay_webhook_failures_dry_run_changes_nothing(patched_gateway, ledger, user, stored_failure):
    output = run("replay_webhook_failures", "--dry-run")

    assert "Replaying Stripe event evt_stored" in output
    assert "1 events would be replayed" in output
    assert ledger.get_balance(user.pk).balance == 0
    stored_failure.refresh_from_db()
    assert stored_failure.resolved_at is None


@pytest.mark.django_db
def test_replay_webhook_failures_resolves_stored_event(patched_gateway, stripe_settings, ledger, user, stored_failure):
    output = run("replay_webhook_failures", "--event-id", "evt_stored")

    assert "1 resolved, 0 still failing" in output
    assert ledger.get_balance(user.pk).balance == 100
    stored_failure.refresh_from_db()
    assert stored_failure.resolved_at is not None


@pytest.mark.django_db
def test_replay_webhook_failures_with_nothing_to_do(patched_gateway):
    assert "No webhook failures matched" in run("replay_webhook_failures", "--event-id", "evt_unknown")


@pytest.mark.django_db
def test_seed_credit_catalog_creates_then_updates(settings):
    settings.CREDIT_CATALOG = {
        "packages": [{"slug": "seeded-pack", "name": "Seeded", "credits": 40, "price": 299}],
        "consumption": [],
        "subscription_tiers": [],
    }

    first = run("seed_credit_catalog")
    settings.CREDIT_CATALOG["packages"][0]["credits"] = 45
    second = run("seed_credit_catalog")

    assert "Created: package:seeded-pack" in first
    assert "Updated: package:seeded-pack" in second
    assert CreditPackage.objects.get(slug="seeded-pack").credits == 45
