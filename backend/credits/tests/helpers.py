"""Fakes and payload builders shared by the credit tests."""
import hashlib
import hmac
import itertools
import json
import time

from django.contrib.auth import get_user_model


WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_KEY = "admin-test-key"
TEST_ACTION = "test_face_swap"
TEST_PRICE_ID = "price_test_monthly"


class FakeStripeGateway:
    """In-memory stand-in for ``StripeGateway``."""

    def __init__(self):
        self._counter = itertools.count(1)
        self.intents = {}
        self.customers = {}
        self.metadata_updates = []

    def create_payment_intent(self, *, amount, currency, metadata, idempotency_key, customer_id=None):
        for intent in self.intents.values():
            if intent["idempotency_key"] == idempotency_key:
                return intent
        intent_id = f"pi_test_{next(self._counter)}"
        intent = {
            "id": intent_id,
            "client_secret": f"{intent_id}_secret",
            "amount": amount,
            "currency": currency,
            "metadata": {key: str(value) for key, value in metadata.items()},
            "idempotency_key": idempotency_key,
        }
        self.intents[intent_id] = intent
        return intent

    def retrieve_payment_intent(self, payment_intent_id):
        return self.intents[payment_intent_id]

    def retrieve_customer(self, customer_id):
        return self.customers.get(customer_id, {"id": customer_id, "email": None, "metadata": {}})

    def update_customer_metadata(self, customer_id, metadata):
        self.metadata_updates.append((customer_id, metadata))


def make_user(username, email=None):
    return get_user_model().objects.create_user(
        username=username,
        email=email or f"{username}@example.com",
        password="pass1234",
    )


def payment_succeeded_event(recharge, *, event_id="evt_paid_1", payment_intent_id=None, metadata=None):
    return {
        "id": event_id,
        "type": "payment_intent.succeeded",
        "data": {
            "object": {
                "id": payment_intent_id or recharge.payment_intent_id,
                "object": "payment_intent",
                "amount_received": recharge.price,
                "currency": recharge.currency,
                "metadata": metadata
                if metadata is not None
                else {"type": "credit_recharge", "rechargeId": str(recharge.pk), "userId": str(recharge.user_id)},
            }
        },
    }


def subscription_event(
    action="created",
    *,
    event_id="evt_sub_1",
    subscription_id="sub_test_1",
    customer_id="cus_test_1",
    status="active",
    price_id=TEST_PRICE_ID,
    unit_amount=2500,
    interval="month",
):
    return {
        "id": event_id,
        "type": f"customer.subscription.{action}",
        "data": {
            "object": {
                "id": subscription_id,
                "object": "subscription",
                "customer": customer_id,
                "status": status,
                "current_period_end": 1893456000,
                "canceled_at": 1893456000 if action == "deleted" else None,
                "items": {
                    "data": [
                        {
                            "price": {
                                "id": price_id,
                                "product": "prod_test",
                                "unit_amount": unit_amount,
                                "currency": "usd",
                                "recurring": {"interval": interval},
                            }
                        }
                    ]
                },
            }
        },
    }


def sign_payload(payload, secret=WEBHOOK_SECRET, timestamp=None):
    timestamp = int(timestamp or time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def post_webhook(client, event, secret=WEBHOOK_SECRET):
    payload = json.dumps(event)
    return client.post(
        "/api/credits/webhooks/stripe/",
        data=payload,
        content_type="application/json",
        HTTP_STRIPE_SIGNATURE=sign_payload(payload, secret),
    )
