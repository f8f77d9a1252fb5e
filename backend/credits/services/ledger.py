"""User credit ledger: the only code path that changes balances.

Every mutation runs in a single atomic unit holding the user's
``CreditBalance`` row lock, appends exactly one ``CreditTransaction`` and
updates the balance snapshot so that ``balance`` equals the sum of the log.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from django.db import transaction

from credits.models import CreditBalance, CreditConsumptionConfig, CreditTransaction, Upload
from credits.observability.logging import log_credit_event
from credits.observability.metrics import CREDIT_CONSUMPTION_COUNT

logger = logging.getLogger(__name__)

INSUFFICIENT_CREDITS = "insufficient_credits"

MAX_HISTORY_PAGE = 100

CREDIT_TYPES = frozenset(
    {
        CreditTransaction.TransactionType.RECHARGE,
        CreditTransaction.TransactionType.BONUS,
        CreditTransaction.TransactionType.SUBSCRIPTION,
        CreditTransaction.TransactionType.REFUND,
    }
)


class CreditLedgerError(Exception):
    """Base exception for credit ledger operations."""


class InvalidAmount(CreditLedgerError, ValueError):
    """Raised when a credit amount is not a positive integer."""


class InvalidTransactionType(CreditLedgerError, ValueError):
    """Raised when a transaction type cannot be used to add credits."""


class UnknownActionType(CreditLedgerError):
    """Raised when no active consumption config exists for an action type."""


class IdempotencyConflict(CreditLedgerError):
    """Raised when an idempotency key collides with different mutation semantics."""


class BalanceIntegrityError(CreditLedgerError):
    """Raised when a mutation would leave a balance inconsistent with its log."""


@dataclass(frozen=True)
class CreditResult:
    new_balance: int
    transaction_id: Any
    created: bool


@dataclass(frozen=True)
class ConsumptionResult:
    success: bool
    balance_after: Optional[int] = None
    amount_consumed: int = 0
    transaction_id: Any = None
    reason: Optional[str] = None
    balance: Optional[int] = None
    required: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        if self.success:
            return {
                "success": True,
                "balance_after": self.balance_after,
                "amount_consumed": self.amount_consumed,
                "transaction_id": str(self.transaction_id),
            }
        return {
            "success": False,
            "reason": self.reason,
            "balance": self.balance,
            "required": self.required,
        }


@dataclass(frozen=True)
class BalanceSnapshot:
    user_id: Any
    balance: int
    total_recharged: int
    total_consumed: int
    updated_at: Optional[datetime] = None


class CreditLedger:
    """Atomic credit mutations and read helpers for a single store."""

    def add_credits(
        self,
        user_id,
        amount: int,
        type: str,
        description: str = "",
        *,
        metadata: Optional[Dict[str, Any]] = None,
        related_recharge_id=None,
        idempotency_key: Optional[str] = None,
    ) -> CreditResult:
        """Credit ``amount`` to the user and log it as ``type``.

        When ``idempotency_key`` matches an existing transaction the call is a
        no-op returning that transaction with ``created=False``.
        """

        _validate_amount(amount)
        if type not in CREDIT_TYPES:
            raise InvalidTransactionType(f"Transaction type '{type}' cannot add credits.")

        with transaction.atomic():
            balance = self.lock_balance(user_id)

            if idempotency_key:
                existing = CreditTransaction.objects.filter(idempotency_key=idempotency_key).first()
                if existing:
                    _validate_idempotent(existing, user_id=balance.user_id, amount=amount, transaction_type=type)
                    return CreditResult(new_balance=balance.balance, transaction_id=existing.id, created=False)

            record = self._append(
                balance,
                amount=amount,
                transaction_type=type,
                description=description,
                metadata=metadata,
                related_recharge_id=related_recharge_id,
                idempotency_key=idempotency_key,
            )

        log_credit_event(
            message="credits.added",
            user_id=balance.user_id,
            extra={"amount": amount, "type": str(type), "balance": record.balance_after, "transaction_id": str(record.id)},
        )
        return CreditResult(new_balance=record.balance_after, transaction_id=record.id, created=True)

    def consume_credits(
        self,
        user_id,
        action_type: str,
        upload_id=None,
        description: Optional[str] = None,
    ) -> ConsumptionResult:
        """Spend the configured cost of ``action_type``.

        The sufficiency check and the debit happen under the same row lock.
        Insufficient balance is a normal outcome, not an exception.
        """

        config = self.get_consumption_config(action_type)
        required = config.credits_required

        with transaction.atomic():
            balance = self.lock_balance(user_id)

            if balance.balance < required:
                CREDIT_CONSUMPTION_COUNT.labels(action_type=action_type, result="insufficient").inc()
                logger.info(
                    "Insufficient credits for user %s action=%s balance=%s required=%s",
                    user_id,
                    action_type,
                    balance.balance,
                    required,
                )
                return ConsumptionResult(
                    success=False,
                    reason=INSUFFICIENT_CREDITS,
                    balance=balance.balance,
                    required=required,
                )

            upload = None
            if upload_id:
                upload = Upload.objects.select_for_update().filter(pk=upload_id, user_id=balance.user_id).first()
                if upload is None:
                    logger.warning("Upload %s not found for user %s; consuming without stamping.", upload_id, user_id)

            record = self._append(
                balance,
                amount=-required,
                transaction_type=CreditTransaction.TransactionType.CONSUMPTION,
                description=description or f"Consumed {required} credits for {action_type}",
                metadata={
                    "action_type": action_type,
                    "upload_id": str(upload_id) if upload_id else None,
                    "credits_required": required,
                },
                related_upload=upload,
            )

            if upload is not None:
                upload.credit_consumed = required
                upload.save(update_fields=["credit_consumed"])

        CREDIT_CONSUMPTION_COUNT.labels(action_type=action_type, result="consumed").inc()
        return ConsumptionResult(
            success=True,
            balance_after=record.balance_after,
            amount_consumed=required,
            transaction_id=record.id,
        )

    def get_balance(self, user_id) -> BalanceSnapshot:
        """Read-only view of the balance; users without a row read as zero."""

        balance = CreditBalance.objects.filter(user_id=user_id).first()
        if balance is None:
            return BalanceSnapshot(user_id=user_id, balance=0, total_recharged=0, total_consumed=0)
        return BalanceSnapshot(
            user_id=balance.user_id,
            balance=balance.balance,
            total_recharged=balance.total_recharged,
            total_consumed=balance.total_consumed,
            updated_at=balance.updated_at,
        )

    def check_sufficient_credits(self, user_id, action_type: str) -> bool:
        """Advisory check; ``consume_credits`` re-checks under the lock."""

        config = self.get_consumption_config(action_type)
        return self.get_balance(user_id).balance >= config.credits_required

    def get_transaction_history(self, user_id, limit: int = 10, offset: int = 0) -> List[CreditTransaction]:
        if limit < 1 or limit > MAX_HISTORY_PAGE:
            raise ValueError(f"limit must be between 1 and {MAX_HISTORY_PAGE}.")
        if offset < 0:
            raise ValueError("offset must not be negative.")
        queryset = CreditTransaction.objects.filter(user_id=user_id).order_by("-created_at", "-id")
        return list(queryset[offset:offset + limit])

    def get_consumption_config(self, action_type: str) -> CreditConsumptionConfig:
        config = CreditConsumptionConfig.objects.filter(action_type=action_type, is_active=True).first()
        if config is None:
            raise UnknownActionType(f"No active consumption config for action type '{action_type}'.")
        return config

    def lock_balance(self, user_id) -> CreditBalance:
        """Return the user's balance row locked for update, creating it at zero if missing.

        Must be called inside ``transaction.atomic()``.
        """

        CreditBalance.objects.get_or_create(user_id=user_id)
        return CreditBalance.objects.select_for_update().get(user_id=user_id)

    def _append(
        self,
        balance: CreditBalance,
        *,
        amount: int,
        transaction_type: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        related_recharge_id=None,
        related_upload: Optional[Upload] = None,
        idempotency_key: Optional[str] = None,
    ) -> CreditTransaction:
        new_balance = balance.balance + amount
        if new_balance < 0:
            raise BalanceIntegrityError(
                f"Transaction of {amount} would leave user {balance.user_id} with a negative balance."
            )

        if amount > 0:
            balance.total_recharged += amount
        else:
            balance.total_consumed += -amount
        balance.balance = new_balance
        balance.save(update_fields=["balance", "total_recharged", "total_consumed", "updated_at"])

        return CreditTransaction.objects.create(
            user_id=balance.user_id,
            type=transaction_type,
            amount=amount,
            balance_after=new_balance,
            description=description or "",
            related_recharge_id=related_recharge_id,
            related_upload=related_upload,
            idempotency_key=idempotency_key,
            metadata=_clean_metadata(metadata),
        )


def _validate_amount(amount) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount("Credit amount must be an integer.")
    if amount <= 0:
        raise InvalidAmount("Credit amount must be positive.")


def _validate_idempotent(record: CreditTransaction, *, user_id, amount: int, transaction_type: str) -> None:
    if record.user_id != user_id:
        raise IdempotencyConflict("Idempotency key belongs to a different user.")
    if record.amount != amount or record.type != transaction_type:
        raise IdempotencyConflict("Existing transaction does not match the idempotent request.")


def _clean_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {key: value for key, value in (metadata or {}).items() if value is not None}
