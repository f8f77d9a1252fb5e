import pytest

from credits.models import CreditPackage, CreditRecharge, CreditTransaction
from credits.services.recharges import (
    RECHARGE_PAYMENT_TYPE,
    InvalidRechargeState,
    PackageNotFound,
    PaymentReferenceMismatch,
    RechargeNotFound,
)


@pytest.mark.django_db
def test_create_recharge_intent_creates_pending_recharge_and_payment_intent(recharges, gateway, user, package):
    intent = recharges.create_recharge_intent(user.pk, package.pk, "checkout-1")

    recharge = intent.recharge
    assert intent.created is True
    assert recharge.status == CreditRecharge.Status.PENDING
    assert recharge.amount == 100
    assert recharge.price == 999
    assert recharge.payment_intent_id == "pi_test_1"
    assert intent.client_secret == "pi_test_1_secret"

    stripe_intent = gateway.intents["pi_test_1"]
    assert stripe_intent["metadata"]["type"] == RECHARGE_PAYMENT_TYPE
    assert stripe_intent["metadata"]["rechargeId"] == str(recharge.pk)
    assert stripe_intent["idempotency_key"] == f"credit-recharge:{recharge.pk}"


@pytest.mark.django_db
def test_create_recharge_intent_is_idempotent_per_key(recharges, gateway, user, package):
    first = recharges.create_recharge_intent(user.pk, package.pk, "checkout-1")
    second = recharges.create_recharge_intent(user.pk, package.pk, "checkout-1")

    assert second.created is False
    assert second.recharge.pk == first.recharge.pk
    assert second.client_secret == first.client_secret
    assert CreditRecharge.objects.filter(user=user).count() == 1
    assert len(gateway.intents) == 1


@pytest.mark.django_db
def test_same_idempotency_key_for_different_users_creates_separate_recharges(recharges, user, other_user, package):
    mine = recharges.create_recharge_intent(user.pk, package.pk, "shared-key")
    theirs = recharges.create_recharge_intent(other_user.pk, package.pk, "shared-key")

    assert mine.recharge.pk != theirs.recharge.pk


@pytest.mark.django_db
def test_create_recharge_without_key_creates_new_intent_each_call(recharges, user, package):
    first = recharges.create_recharge(user.pk, package.pk)
    second = recharges.create_recharge(user.pk, package.pk)

    assert first.recharge.pk != second.recharge.pk


@pytest.mark.django_db
def test_create_recharge_intent_rejects_missing_or_inactive_package(recharges, user):
    inactive = CreditPackage.objects.create(slug="retired", name="Retired", credits=10, price=100, is_active=False)

    with pytest.raises(PackageNotFound):
        recharges.create_recharge_intent(user.pk, inactive.pk, "k1")
    with pytest.raises(PackageNotFound):
        recharges.create_recharge_intent(user.pk, "not-a-uuid", "k2")

    assert not CreditRecharge.objects.filter(user=user).exists()


@pytest.mark.django_db
def test_complete_recharge_credits_once(recharges, ledger, user, pending_recharge):
    first = recharges.complete_recharge(pending_recharge.pk, pending_recharge.payment_intent_id)
    second = recharges.complete_recharge(pending_recharge.pk, pending_recharge.payment_intent_id)

    assert first.success is True
    assert first.duplicate is False
    assert first.new_balance == 100
    assert second.success is True
    assert second.duplicate is True
    assert second.new_balance == 100
    assert second.transaction_id == first.transaction_id

    pending_recharge.refresh_from_db()
    assert pending_recharge.status == CreditRecharge.Status.COMPLETED
    assert pending_recharge.completed_at is not None
    assert CreditTransaction.objects.filter(related_recharge=pending_recharge, type="recharge").count() == 1
    assert ledger.get_balance(user.pk).balance == 100


@pytest.mark.django_db
def test_complete_recharge_rejects_mismatched_payment_reference(recharges, ledger, user, pending_recharge):
    with pytest.raises(PaymentReferenceMismatch):
        recharges.complete_recharge(pending_recharge.pk, "pi_someone_else")

    pending_recharge.refresh_from_db()
    assert pending_recharge.status == CreditRecharge.Status.PENDING
    assert ledger.get_balance(user.pk).balance == 0


@pytest.mark.django_db
def test_complete_recharge_adopts_reference_when_none_stored(recharges, user, package):
    recharge = CreditRecharge.objects.create(user=user, package=package, amount=100, price=999, idempotency_key="legacy")

    result = recharges.complete_recharge(recharge.pk, "pi_late")

    recharge.refresh_from_db()
    assert result.new_balance == 100
    assert recharge.payment_intent_id == "pi_late"


@pytest.mark.django_db
@pytest.mark.parametrize("recharge_id", ["00000000-0000-0000-0000-000000000000", "garbage"])
def test_complete_recharge_unknown_id(recharges, recharge_id):
    with pytest.raises(RechargeNotFound):
        recharges.complete_recharge(recharge_id, "pi_x")


@pytest.mark.django_db
def test_failed_recharge_cannot_be_completed(recharges, ledger, user, pending_recharge):
    recharges.fail_recharge(pending_recharge.pk, reason="card_declined")

    with pytest.raises(InvalidRechargeState):
        recharges.complete_recharge(pending_recharge.pk, pending_recharge.payment_intent_id)

    pending_recharge.refresh_from_db()
    assert pending_recharge.status == CreditRecharge.Status.FAILED
    assert pending_recharge.failure_reason == "card_declined"
    assert ledger.get_balance(user.pk).balance == 0


@pytest.mark.django_db
def test_completed_recharge_cannot_be_failed(recharges, pending_recharge):
    recharges.complete_recharge(pending_recharge.pk, pending_recharge.payment_intent_id)

    with pytest.raises(InvalidRechargeState):
        recharges.fail_recharge(pending_recharge.pk)


@pytest.mark.django_db
def test_recharge_history_is_scoped_to_user(recharges, user, other_user, package):
    recharges.create_recharge_intent(user.pk, package.pk, "a")
    recharges.create_recharge_intent(user.pk, package.pk, "b")
    recharges.create_recharge_intent(other_user.pk, package.pk, "c")

    history = recharges.get_recharge_history(user.pk)

    assert {recharge.idempotency_key for recharge in history} == {"a", "b"}
