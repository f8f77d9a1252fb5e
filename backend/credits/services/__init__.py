"""Expose credit services wired from Django settings."""

from django.conf import settings

from .ledger import CreditLedger
from .recharges import RechargeManager
from .reconciliation import ReconciliationService
from .retry import RetryPolicy
from .stripe_gateway import StripeGateway
from .subscriptions import SubscriptionService
from .webhooks import WebhookProcessor


def build_credit_ledger() -> CreditLedger:
    return CreditLedger()


def build_recharge_manager(gateway=None) -> RechargeManager:
    return RechargeManager(ledger=build_credit_ledger(), gateway=gateway or StripeGateway())


def build_retry_policy(sleep=None) -> RetryPolicy:
    policy = RetryPolicy(
        max_attempts=int(getattr(settings, "CREDIT_WEBHOOK_MAX_ATTEMPTS", 3)),
        base_delay=float(getattr(settings, "CREDIT_WEBHOOK_RETRY_BASE_SECONDS", 1)),
    )
    if sleep is not None:
        policy.sleep = sleep
    return policy


def build_webhook_processor(gateway=None, sleep=None) -> WebhookProcessor:
    gateway = gateway or StripeGateway()
    recharges = build_recharge_manager(gateway=gateway)
    return WebhookProcessor(
        recharges=recharges,
        subscriptions=SubscriptionService(ledger=recharges.ledger, gateway=gateway),
        retry_policy=build_retry_policy(sleep=sleep),
    )


def build_reconciliation_service(gateway=None) -> ReconciliationService:
    processor = build_webhook_processor(gateway=gateway)
    return ReconciliationService(
        ledger=processor.recharges.ledger,
        recharges=processor.recharges,
        webhook_processor=processor,
    )
