import pytest
from rest_framework.test import APIClient

from credits.models import CreditConsumptionConfig, CreditPackage, SubscriptionCreditTier
from credits.services.ledger import CreditLedger
from credits.services.recharges import RechargeManager
from credits.services.retry import RetryPolicy
from credits.services.subscriptions import SubscriptionService
from credits.services.webhooks import WebhookProcessor
from credits.tests.helpers import ADMIN_KEY, TEST_ACTION, TEST_PRICE_ID, WEBHOOK_SECRET, FakeStripeGateway, make_user


@pytest.fixture
def user(db):
    return make_user("alice")


@pytest.fixture
def other_user(db):
    return make_user("bob")


@pytest.fixture
def action_config(db):
    return CreditConsumptionConfig.objects.create(action_type=TEST_ACTION, credits_required=1)


@pytest.fixture
def package(db):
    return CreditPackage.objects.create(slug="test-pack", name="Test pack", credits=100, price=999, currency="usd")


@pytest.fixture
def subscription_tier(db):
    return SubscriptionCreditTier.objects.create(
        name="Test monthly",
        stripe_price_id=TEST_PRICE_ID,
        unit_amount=2500,
        currency="usd",
        interval=SubscriptionCreditTier.Interval.MONTH,
        credits=200,
    )


@pytest.fixture
def ledger():
    return CreditLedger()


@pytest.fixture
def gateway():
    return FakeStripeGateway()


@pytest.fixture
def recharges(ledger, gateway):
    return RechargeManager(ledger=ledger, gateway=gateway)


@pytest.fixture
def subscriptions(ledger, gateway):
    return SubscriptionService(ledger=ledger, gateway=gateway)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def processor(recharges, subscriptions, sleeps):
    return WebhookProcessor(
        recharges=recharges,
        subscriptions=subscriptions,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=1.0, sleep=sleeps.append),
    )


@pytest.fixture
def pending_recharge(user, package, recharges):
    return recharges.create_recharge_intent(user.pk, package.pk, "key-1").recharge


@pytest.fixture
def stripe_settings(settings):
    settings.STRIPE_WEBHOOK_SECRET = WEBHOOK_SECRET
    settings.CREDITS_ADMIN_API_KEY = ADMIN_KEY
    settings.CREDIT_WEBHOOK_RETRY_BASE_SECONDS = 0
    return settings


@pytest.fixture
def patched_gateway(monkeypatch, gateway):
    """Make the service factories used by views and tasks build the fake gateway."""

    monkeypatch.setattr("credits.services.StripeGateway", lambda: gateway)
    return gateway


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def auth_client(api_client, user):
    api_client.force_authenticate(user=user)
    return api_client


@pytest.fixture
def admin_client(stripe_settings):
    client = APIClient()
    client.credentials(HTTP_AUTHORIZATION=f"Bearer {ADMIN_KEY}")
    return client
