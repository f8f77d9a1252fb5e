"""Subscription mirroring, customer linking and subscription credit grants."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from django.contrib.auth import get_user_model
from django.db import IntegrityError, transaction
from django.utils import timezone

from credits.models import (
    CreditTransaction,
    CustomerProfile,
    StripeSubscription,
    SubscriptionCreditTier,
    UnlinkedSubscription,
)
from credits.observability.logging import log_credit_event
from credits.services.events import SubscriptionChanged
from credits.services.ledger import CreditLedger
from credits.services.stripe_gateway import StripeGateway, StripeServiceError

logger = logging.getLogger(__name__)

User = get_user_model()

BONUS_STATUSES = frozenset({"active", "trialing"})


class SubscriptionError(Exception):
    """Base exception for subscription handling."""


class UnmappedSubscriptionPrice(SubscriptionError):
    """Raised when no credit tier is configured for a subscription price."""


class SubscriptionNotFound(SubscriptionError):
    """Raised when a subscription is not known locally."""


class SubscriptionLinkError(SubscriptionError):
    """Raised when a subscription cannot be linked to the requested user."""


@dataclass(frozen=True)
class SubscriptionSyncResult:
    subscription: StripeSubscription
    linked: bool
    bonus_transaction_id: Any = None
    bonus_credits: int = 0


def initial_bonus_key(subscription_id: str) -> str:
    return f"subscription:{subscription_id}:initial"


class SubscriptionService:
    def __init__(self, ledger: Optional[CreditLedger] = None, gateway: Optional[StripeGateway] = None):
        self.ledger = ledger or CreditLedger()
        self.gateway = gateway or StripeGateway()

    def sync(self, event: SubscriptionChanged) -> SubscriptionSyncResult:
        """Mirror a subscription event locally and grant the initial credits once."""

        user_id, customer_email = self.resolve_user(event.customer_id)

        with transaction.atomic():
            subscription, created = self._upsert(event)
            was_unlinked = subscription.user_id is None

            if user_id is not None and subscription.user_id is None:
                subscription.user_id = user_id
                subscription.save(update_fields=["user", "updated_at"])
            newly_linked = was_unlinked and subscription.user_id is not None and not created

            if subscription.user_id is None:
                self._enqueue_unlinked(subscription, customer_email)
                logger.warning(
                    "Subscription %s for customer %s has no resolvable owner; queued for linking.",
                    subscription.stripe_subscription_id,
                    event.customer_id,
                )
                return SubscriptionSyncResult(subscription=subscription, linked=False)

            if newly_linked:
                self._resolve_queue_entry(subscription, actor="webhook")

            bonus_id, bonus_credits = None, 0
            eligible = event.action == SubscriptionChanged.CREATED or newly_linked
            if eligible and subscription.status in BONUS_STATUSES:
                bonus_id, bonus_credits = self._grant_initial_bonus(subscription)

        return SubscriptionSyncResult(
            subscription=subscription,
            linked=True,
            bonus_transaction_id=bonus_id,
            bonus_credits=bonus_credits,
        )

    def resolve_user(self, customer_id: str) -> Tuple[Optional[Any], str]:
        """Map a Stripe customer to a user id.

        Order: stored mapping, customer metadata ``userId``, customer email.
        A match found through Stripe is persisted and written back to the
        customer's metadata.
        """

        profile = CustomerProfile.objects.filter(stripe_customer_id=customer_id).first()
        if profile is not None:
            return profile.user_id, ""

        customer = self.gateway.retrieve_customer(customer_id)
        if customer.get("deleted"):
            return None, ""

        email = str(customer.get("email") or "")
        metadata = customer.get("metadata") or {}

        user, source = None, None
        metadata_user_id = metadata.get("userId") or metadata.get("user_id")
        if metadata_user_id:
            user = User.objects.filter(pk=_coerce_pk(metadata_user_id)).first()
            source = CustomerProfile.LinkSource.METADATA
        if user is None and email:
            user = User.objects.filter(email__iexact=email).first()
            source = CustomerProfile.LinkSource.EMAIL_MATCH

        if user is None:
            return None, email

        self.store_mapping(user, customer_id, source)
        if source == CustomerProfile.LinkSource.EMAIL_MATCH:
            self._tag_customer(customer_id, user)
        return user.pk, email

    def store_mapping(self, user, customer_id: str, source: str) -> Optional[CustomerProfile]:
        existing = CustomerProfile.objects.filter(user=user).first()
        if existing is not None:
            if existing.stripe_customer_id != customer_id:
                logger.warning(
                    "User %s already linked to customer %s; not remapping to %s.",
                    user.pk,
                    existing.stripe_customer_id,
                    customer_id,
                )
            return existing
        try:
            with transaction.atomic():
                profile = CustomerProfile.objects.create(
                    user=user,
                    stripe_customer_id=customer_id,
                    linked_by=source,
                    linked_at=timezone.now(),
                )
        except IntegrityError:
            return CustomerProfile.objects.filter(stripe_customer_id=customer_id).first()
        log_credit_event(
            message="customer.linked",
            user_id=user.pk,
            extra={"stripe_customer_id": customer_id, "linked_by": source},
        )
        return profile

    def resolve_tier_credits(self, subscription: StripeSubscription) -> int:
        tiers = SubscriptionCreditTier.objects.filter(is_active=True)
        tier = None
        if subscription.price_id:
            tier = tiers.filter(stripe_price_id=subscription.price_id).first()
        if tier is None and subscription.unit_amount is not None:
            tier = tiers.filter(
                unit_amount=subscription.unit_amount,
                currency__iexact=subscription.currency,
                interval=subscription.interval,
            ).first()
        if tier is None:
            raise UnmappedSubscriptionPrice(
                f"No credit tier for price {subscription.price_id or '-'} "
                f"({subscription.unit_amount} {subscription.currency}/{subscription.interval})."
            )
        return tier.credits

    def list_unlinked(self) -> List[UnlinkedSubscription]:
        return list(
            UnlinkedSubscription.objects.filter(resolved_at__isnull=True)
            .select_related("subscription")
            .order_by("created_at")
        )

    def link_subscription(self, subscription_id: str, user_id, *, actor: str = "admin") -> SubscriptionSyncResult:
        """Attach an unlinked subscription to a user and backfill its credits."""

        user = User.objects.filter(pk=_coerce_pk(user_id)).first()
        if user is None:
            raise SubscriptionLinkError(f"User {user_id} does not exist.")

        with transaction.atomic():
            subscription = (
                StripeSubscription.objects.select_for_update()
                .filter(stripe_subscription_id=subscription_id)
                .first()
            )
            if subscription is None:
                raise SubscriptionNotFound(f"Subscription {subscription_id} not found.")
            if subscription.user_id is not None and subscription.user_id != user.pk:
                raise SubscriptionLinkError(
                    f"Subscription {subscription_id} already belongs to user {subscription.user_id}."
                )

            subscription.user = user
            subscription.save(update_fields=["user", "updated_at"])
            self.store_mapping(user, subscription.stripe_customer_id, CustomerProfile.LinkSource.ADMIN)
            self._resolve_queue_entry(subscription, actor=actor)

            bonus_id, bonus_credits = None, 0
            if subscription.status in BONUS_STATUSES:
                bonus_id, bonus_credits = self._grant_initial_bonus(subscription)

        log_credit_event(
            message="subscription.linked",
            user_id=user.pk,
            actor=actor,
            extra={"subscription_id": subscription_id, "bonus_credits": bonus_credits},
        )
        return SubscriptionSyncResult(
            subscription=subscription,
            linked=True,
            bonus_transaction_id=bonus_id,
            bonus_credits=bonus_credits,
        )

    def _upsert(self, event: SubscriptionChanged) -> Tuple[StripeSubscription, bool]:
        fields = {
            "stripe_customer_id": event.customer_id,
            "status": event.status,
            "price_id": event.price_id,
            "product_id": event.product_id,
            "unit_amount": event.unit_amount,
            "currency": event.currency,
            "interval": event.interval,
            "current_period_end": event.current_period_end,
        }
        if event.action == SubscriptionChanged.DELETED:
            fields["canceled_at"] = event.canceled_at or timezone.now()

        subscription = (
            StripeSubscription.objects.select_for_update()
            .filter(stripe_subscription_id=event.subscription_id)
            .first()
        )
        if subscription is None:
            try:
                with transaction.atomic():
                    subscription = StripeSubscription.objects.create(
                        stripe_subscription_id=event.subscription_id,
                        **fields,
                    )
                return subscription, True
            except IntegrityError:
                subscription = StripeSubscription.objects.select_for_update().get(
                    stripe_subscription_id=event.subscription_id
                )

        for name, value in fields.items():
            setattr(subscription, name, value)
        subscription.save(update_fields=[*fields.keys(), "updated_at"])
        return subscription, False

    def _grant_initial_bonus(self, subscription: StripeSubscription) -> Tuple[Any, int]:
        credits = self.resolve_tier_credits(subscription)
        result = self.ledger.add_credits(
            subscription.user_id,
            credits,
            CreditTransaction.TransactionType.SUBSCRIPTION,
            f"Subscription bonus {credits} credits",
            metadata={
                "subscription_id": subscription.stripe_subscription_id,
                "price_id": subscription.price_id,
                "unit_amount": subscription.unit_amount,
                "interval": subscription.interval,
            },
            idempotency_key=initial_bonus_key(subscription.stripe_subscription_id),
        )
        if result.created:
            log_credit_event(
                message="subscription.bonus_granted",
                user_id=subscription.user_id,
                extra={"subscription_id": subscription.stripe_subscription_id, "credits": credits},
            )
        return result.transaction_id, credits

    def _enqueue_unlinked(self, subscription: StripeSubscription, customer_email: str) -> None:
        entry, created = UnlinkedSubscription.objects.get_or_create(
            subscription=subscription,
            defaults={
                "stripe_customer_id": subscription.stripe_customer_id,
                "customer_email": customer_email,
                "reason": "No user matched the customer mapping, metadata or email.",
            },
        )
        if not created and customer_email and entry.customer_email != customer_email:
            entry.customer_email = customer_email
            entry.save(update_fields=["customer_email"])

    def _resolve_queue_entry(self, subscription: StripeSubscription, *, actor: str) -> None:
        UnlinkedSubscription.objects.filter(subscription=subscription, resolved_at__isnull=True).update(
            resolved_at=timezone.now(),
            resolved_by=actor,
        )

    def _tag_customer(self, customer_id: str, user) -> None:
        try:
            self.gateway.update_customer_metadata(
                customer_id,
                {"userId": user.pk, "linkedBy": "email_match", "linkedAt": timezone.now().isoformat()},
            )
        except StripeServiceError as exc:
            logger.warning("Could not tag Stripe customer %s with user %s: %s", customer_id, user.pk, exc)


def _coerce_pk(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
