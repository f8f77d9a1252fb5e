"""Recharge lifecycle: pending intent -> completed (credited) or failed."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.utils import timezone

from credits.models import CreditPackage, CreditRecharge, CreditTransaction
from credits.observability.logging import log_credit_event
from credits.observability.metrics import RECHARGE_COMPLETION_COUNT
from credits.services.ledger import MAX_HISTORY_PAGE, CreditLedger
from credits.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

RECHARGE_PAYMENT_TYPE = "credit_recharge"


class RechargeError(Exception):
    """Base exception for recharge lifecycle operations."""


class PackageNotFound(RechargeError):
    """Raised when the requested credit package does not exist or is inactive."""


class RechargeNotFound(RechargeError):
    """Raised when the referenced recharge cannot be located."""


class PaymentReferenceMismatch(RechargeError):
    """Raised when a payment reference does not belong to the recharge it names."""


class InvalidRechargeState(RechargeError):
    """Raised when a recharge cannot make the requested transition."""


@dataclass(frozen=True)
class RechargeIntent:
    recharge: CreditRecharge
    client_secret: Optional[str]
    created: bool


@dataclass(frozen=True)
class CompletionResult:
    success: bool
    new_balance: int
    duplicate: bool
    transaction_id: Any
    recharge_id: Any

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "new_balance": self.new_balance,
            "duplicate": self.duplicate,
            "transaction_id": str(self.transaction_id) if self.transaction_id else None,
            "recharge_id": str(self.recharge_id),
        }


class RechargeManager:
    """Creates recharge intents and completes them exactly once."""

    def __init__(self, ledger: Optional[CreditLedger] = None, gateway: Optional[StripeGateway] = None):
        self.ledger = ledger or CreditLedger()
        self.gateway = gateway or StripeGateway()

    def list_active_packages(self) -> List[CreditPackage]:
        return list(CreditPackage.objects.filter(is_active=True).order_by("sort_order", "price"))

    def get_recharge_history(self, user_id, limit: int = 10, offset: int = 0) -> List[CreditRecharge]:
        if limit < 1 or limit > MAX_HISTORY_PAGE:
            raise ValueError(f"limit must be between 1 and {MAX_HISTORY_PAGE}.")
        if offset < 0:
            raise ValueError("offset must not be negative.")
        queryset = CreditRecharge.objects.filter(user_id=user_id).select_related("package").order_by("-created_at")
        return list(queryset[offset:offset + limit])

    def create_recharge(self, user_id, package_id, idempotency_key: Optional[str] = None) -> RechargeIntent:
        """Create a recharge intent; without a key every call creates a new one."""

        return self.create_recharge_intent(user_id, package_id, idempotency_key or uuid.uuid4().hex)

    def create_recharge_intent(self, user_id, package_id, idempotency_key: str) -> RechargeIntent:
        """Create (or return the existing) pending recharge for ``idempotency_key``.

        The Stripe PaymentIntent is created after the recharge row exists, with a
        Stripe idempotency key derived from the recharge id, so a retried call
        converges on the same intent.
        """

        if not idempotency_key:
            raise ValueError("idempotency_key is required.")

        existing = CreditRecharge.objects.filter(user_id=user_id, idempotency_key=idempotency_key).first()
        if existing:
            logger.info("Recharge %s reused for idempotency key %s.", existing.pk, idempotency_key)
            return self._ensure_payment_intent(existing, created=False)

        package = self._get_active_package(package_id)

        try:
            with transaction.atomic():
                recharge = CreditRecharge.objects.create(
                    user_id=user_id,
                    package=package,
                    amount=package.credits,
                    price=package.price,
                    currency=package.currency,
                    idempotency_key=idempotency_key,
                    metadata={"idempotency_key": idempotency_key, "package_id": str(package.pk)},
                )
        except IntegrityError:
            recharge = CreditRecharge.objects.get(user_id=user_id, idempotency_key=idempotency_key)
            return self._ensure_payment_intent(recharge, created=False)

        log_credit_event(
            message="recharge.created",
            user_id=user_id,
            extra={"recharge_id": str(recharge.pk), "package": package.slug, "credits": package.credits},
        )
        return self._ensure_payment_intent(recharge, created=True)

    def complete_recharge(self, recharge_id, payment_intent_id: Optional[str]) -> CompletionResult:
        """Credit a recharge exactly once.

        A recharge that already has its recharge transaction is reported as a
        duplicate. A completed recharge without one (an orphan) is credited now.
        """

        with transaction.atomic():
            recharge = self._lock_recharge(recharge_id)

            if recharge.payment_intent_id and payment_intent_id and recharge.payment_intent_id != payment_intent_id:
                raise PaymentReferenceMismatch(
                    f"Payment {payment_intent_id} does not match recharge {recharge.pk}."
                )
            if recharge.status == CreditRecharge.Status.FAILED:
                raise InvalidRechargeState(f"Recharge {recharge.pk} has failed and cannot be completed.")

            existing = recharge.transactions.filter(type=CreditTransaction.TransactionType.RECHARGE).first()
            if existing:
                RECHARGE_COMPLETION_COUNT.labels(result="duplicate").inc()
                logger.info("Recharge %s already credited by transaction %s.", recharge.pk, existing.pk)
                return CompletionResult(
                    success=True,
                    new_balance=self.ledger.get_balance(recharge.user_id).balance,
                    duplicate=True,
                    transaction_id=existing.pk,
                    recharge_id=recharge.pk,
                )

            orphaned = recharge.status == CreditRecharge.Status.COMPLETED
            update_fields = ["status", "completed_at", "updated_at"]
            if not recharge.payment_intent_id and payment_intent_id:
                logger.warning("Recharge %s had no payment reference; adopting %s.", recharge.pk, payment_intent_id)
                recharge.payment_intent_id = payment_intent_id
                update_fields.append("payment_intent_id")
            recharge.status = CreditRecharge.Status.COMPLETED
            recharge.completed_at = recharge.completed_at or timezone.now()
            recharge.save(update_fields=update_fields)

            result = self.ledger.add_credits(
                recharge.user_id,
                recharge.amount,
                CreditTransaction.TransactionType.RECHARGE,
                f"Recharge {recharge.amount} credits",
                metadata={
                    "recharge_id": str(recharge.pk),
                    "payment_intent_id": recharge.payment_intent_id,
                    "price": recharge.price,
                    "currency": recharge.currency,
                },
                related_recharge_id=recharge.pk,
            )

        RECHARGE_COMPLETION_COUNT.labels(result="orphan_repaired" if orphaned else "completed").inc()
        log_credit_event(
            message="recharge.orphan_repaired" if orphaned else "recharge.completed",
            user_id=recharge.user_id,
            extra={
                "recharge_id": str(recharge.pk),
                "payment_intent_id": recharge.payment_intent_id,
                "credits": recharge.amount,
                "balance": result.new_balance,
            },
        )
        return CompletionResult(
            success=True,
            new_balance=result.new_balance,
            duplicate=False,
            transaction_id=result.transaction_id,
            recharge_id=recharge.pk,
        )

    def fail_recharge(self, recharge_id, reason: str = "") -> CreditRecharge:
        """Mark a pending recharge as failed. Completed recharges stay completed."""

        with transaction.atomic():
            recharge = self._lock_recharge(recharge_id)
            if recharge.status == CreditRecharge.Status.COMPLETED:
                raise InvalidRechargeState(f"Recharge {recharge.pk} is already completed.")
            if recharge.status == CreditRecharge.Status.FAILED:
                return recharge

            recharge.status = CreditRecharge.Status.FAILED
            recharge.failure_reason = reason or ""
            recharge.save(update_fields=["status", "failure_reason", "updated_at"])

        log_credit_event(
            message="recharge.failed",
            user_id=recharge.user_id,
            extra={"recharge_id": str(recharge.pk), "reason": reason},
        )
        return recharge

    def _ensure_payment_intent(self, recharge: CreditRecharge, *, created: bool) -> RechargeIntent:
        if recharge.status != CreditRecharge.Status.PENDING:
            return RechargeIntent(recharge=recharge, client_secret=None, created=created)

        if recharge.payment_intent_id:
            intent = self.gateway.retrieve_payment_intent(recharge.payment_intent_id)
            return RechargeIntent(recharge=recharge, client_secret=intent.get("client_secret"), created=created)

        intent = self.gateway.create_payment_intent(
            amount=recharge.price,
            currency=recharge.currency,
            metadata={
                "type": RECHARGE_PAYMENT_TYPE,
                "rechargeId": str(recharge.pk),
                "userId": str(recharge.user_id),
                "packageId": str(recharge.package_id) if recharge.package_id else "",
                "credits": recharge.amount,
                "idempotencyKey": recharge.idempotency_key,
            },
            idempotency_key=f"credit-recharge:{recharge.pk}",
        )
        CreditRecharge.objects.filter(pk=recharge.pk, payment_intent_id__isnull=True).update(
            payment_intent_id=intent["id"],
            updated_at=timezone.now(),
        )
        recharge.refresh_from_db()
        return RechargeIntent(recharge=recharge, client_secret=intent.get("client_secret"), created=created)

    @staticmethod
    def _get_active_package(package_id) -> CreditPackage:
        try:
            package = CreditPackage.objects.filter(pk=package_id, is_active=True).first()
        except (ValidationError, ValueError, TypeError):
            package = None
        if package is None:
            raise PackageNotFound(f"Credit package {package_id} not found or inactive.")
        return package

    @staticmethod
    def _lock_recharge(recharge_id) -> CreditRecharge:
        try:
            recharge = CreditRecharge.objects.select_for_update().filter(pk=recharge_id).first()
        except (ValidationError, ValueError, TypeError):
            recharge = None
        if recharge is None:
            raise RechargeNotFound(f"Recharge {recharge_id} not found.")
        return recharge
