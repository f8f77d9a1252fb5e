"""Detection and repair of ledger drift."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from django.conf import settings
from django.db import transaction
from django.db.models import Exists, F, IntegerField, OuterRef, Q, Subquery, Sum
from django.db.models.functions import Coalesce
from django.utils import timezone

from credits.models import CreditBalance, CreditRecharge, CreditTransaction
from credits.observability.logging import log_credit_event
from credits.services.ledger import BalanceIntegrityError, CreditLedger
from credits.services.recharges import CompletionResult, RechargeError, RechargeManager, RechargeNotFound
from credits.services.webhooks import ReplaySummary, WebhookProcessor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Drift:
    """A detected inconsistency and the repair that resolves it."""

    ORPHANED_RECHARGE = "orphaned_recharge"
    STALE_PENDING = "stale_pending_recharge"
    NEGATIVE_BALANCE = "negative_balance"
    BALANCE_MISMATCH = "balance_mismatch"

    kind: str
    user_id: Any
    detail: str
    repair_action: str
    recharge_id: Any = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "user_id": self.user_id,
            "recharge_id": str(self.recharge_id) if self.recharge_id else None,
            "detail": self.detail,
            "repair_action": self.repair_action,
        }


@dataclass(frozen=True)
class RecalculationResult:
    user_id: Any
    previous_balance: int
    balance: int
    total_recharged: int
    total_consumed: int

    @property
    def changed(self) -> bool:
        return self.previous_balance != self.balance

    def as_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "previous_balance": self.previous_balance,
            "balance": self.balance,
            "total_recharged": self.total_recharged,
            "total_consumed": self.total_consumed,
            "changed": self.changed,
        }


@dataclass(frozen=True)
class RepairSummary:
    checked: int
    repaired: List[CompletionResult] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "repaired": [result.as_dict() for result in self.repaired],
            "failed": [{"recharge_id": recharge_id, "error": error} for recharge_id, error in self.failed],
        }


@dataclass(frozen=True)
class HealthSnapshot:
    recent_recharges: int
    orphaned_recharges: int
    stale_pending_recharges: int
    checked_at: datetime

    @property
    def healthy(self) -> bool:
        return self.orphaned_recharges == 0 and self.stale_pending_recharges == 0

    @property
    def status(self) -> str:
        return "healthy" if self.healthy else "needs_attention"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "recent_recharges": self.recent_recharges,
            "orphaned_recharges": self.orphaned_recharges,
            "stale_pending_recharges": self.stale_pending_recharges,
            "checked_at": self.checked_at.isoformat(),
        }


class ReconciliationService:
    def __init__(
        self,
        *,
        ledger: Optional[CreditLedger] = None,
        recharges: Optional[RechargeManager] = None,
        webhook_processor: Optional[WebhookProcessor] = None,
    ):
        self.ledger = ledger or CreditLedger()
        self.recharges = recharges or RechargeManager(ledger=self.ledger)
        self._webhook_processor = webhook_processor

    @property
    def webhook_processor(self) -> WebhookProcessor:
        if self._webhook_processor is None:
            self._webhook_processor = WebhookProcessor(recharges=self.recharges)
        return self._webhook_processor

    def find_orphaned_recharges(self, user_id=None, lookback: Optional[timedelta] = None):
        """Completed recharges inside the lookback window that have no recharge transaction."""

        lookback = lookback or timedelta(days=getattr(settings, "CREDIT_ORPHAN_LOOKBACK_DAYS", 30))
        credited = CreditTransaction.objects.filter(
            related_recharge=OuterRef("pk"),
            type=CreditTransaction.TransactionType.RECHARGE,
        )
        queryset = CreditRecharge.objects.filter(
            status=CreditRecharge.Status.COMPLETED,
            created_at__gte=timezone.now() - lookback,
        ).filter(~Exists(credited))
        if user_id is not None:
            queryset = queryset.filter(user_id=user_id)
        return queryset.order_by("created_at")

    def repair_orphaned_recharge(self, recharge_id) -> CompletionResult:
        """Run the normal completion path for one recharge; a no-op if it is already credited."""

        recharge = CreditRecharge.objects.filter(pk=recharge_id).first() if _is_uuid_like(recharge_id) else None
        if recharge is None:
            raise RechargeNotFound(f"Recharge {recharge_id} not found.")
        result = self.recharges.complete_recharge(recharge.pk, recharge.payment_intent_id)
        log_credit_event(
            message="reconciliation.recharge_repaired",
            user_id=recharge.user_id,
            extra={"recharge_id": str(recharge.pk), "duplicate": result.duplicate},
        )
        return result

    def repair_orphaned_recharges(self, user_id=None) -> RepairSummary:
        orphans = list(self.find_orphaned_recharges(user_id=user_id).values_list("pk", flat=True))
        repaired: List[CompletionResult] = []
        failed: List[Tuple[str, str]] = []
        for recharge_id in orphans:
            try:
                repaired.append(self.repair_orphaned_recharge(recharge_id))
            except RechargeError as exc:
                logger.warning("Could not repair recharge %s: %s", recharge_id, exc)
                failed.append((str(recharge_id), str(exc)))
        return RepairSummary(checked=len(orphans), repaired=repaired, failed=failed)

    def find_stale_pending_recharges(self, older_than: Optional[timedelta] = None):
        older_than = older_than or timedelta(minutes=getattr(settings, "CREDIT_STALE_PENDING_MINUTES", 10))
        return CreditRecharge.objects.filter(
            status=CreditRecharge.Status.PENDING,
            created_at__lt=timezone.now() - older_than,
        ).order_by("created_at")

    def find_negative_balances(self):
        """Empty while the ``credit_balance_non_negative`` constraint is in place.

        Only reports rows on a database where that constraint was dropped or
        never applied.
        """
        return CreditBalance.objects.filter(balance__lt=0)

    def find_balance_drift(self):
        """Balances whose snapshot differs from the sum of the user's transaction log."""

        log_total = (
            CreditTransaction.objects.filter(user_id=OuterRef("user_id"))
            .order_by()
            .values("user_id")
            .annotate(total=Sum("amount"))
            .values("total")
        )
        return (
            CreditBalance.objects.annotate(
                log_total=Coalesce(Subquery(log_total, output_field=IntegerField()), 0),
            )
            .filter(~Q(balance=F("log_total")))
            .order_by("user_id")
        )

    def detect_drift(self) -> List[Drift]:
        drifts: List[Drift] = []
        for recharge in self.find_orphaned_recharges():
            drifts.append(
                Drift(
                    kind=Drift.ORPHANED_RECHARGE,
                    user_id=recharge.user_id,
                    recharge_id=recharge.pk,
                    detail=f"Completed recharge of {recharge.amount} credits has no recharge transaction.",
                    repair_action="fix_specific_recharge",
                )
            )
        for recharge in self.find_stale_pending_recharges():
            drifts.append(
                Drift(
                    kind=Drift.STALE_PENDING,
                    user_id=recharge.user_id,
                    recharge_id=recharge.pk,
                    detail=f"Recharge pending since {recharge.created_at.isoformat()}.",
                    repair_action="retry_failed_payments",
                )
            )
        for balance in self.find_negative_balances():
            drifts.append(
                Drift(
                    kind=Drift.NEGATIVE_BALANCE,
                    user_id=balance.user_id,
                    detail=f"Balance is {balance.balance}.",
                    repair_action="recalculate_balance",
                )
            )
        for balance in self.find_balance_drift():
            drifts.append(
                Drift(
                    kind=Drift.BALANCE_MISMATCH,
                    user_id=balance.user_id,
                    detail=f"Snapshot {balance.balance} differs from log total {balance.log_total}.",
                    repair_action="recalculate_balance",
                )
            )
        return drifts

    def recalculate_balance(self, user_id) -> RecalculationResult:
        """Rebuild the balance snapshot from the transaction log under the row lock."""

        with transaction.atomic():
            balance = self.ledger.lock_balance(user_id)
            totals = CreditTransaction.objects.filter(user_id=balance.user_id).aggregate(
                credits_in=Sum("amount", filter=Q(amount__gt=0)),
                credits_out=Sum("amount", filter=Q(amount__lt=0)),
            )
            total_recharged = totals["credits_in"] or 0
            total_consumed = -(totals["credits_out"] or 0)
            recalculated = total_recharged - total_consumed
            if recalculated < 0:
                raise BalanceIntegrityError(
                    f"Transaction log for user {balance.user_id} sums to {recalculated}."
                )

            previous = balance.balance
            balance.balance = recalculated
            balance.total_recharged = total_recharged
            balance.total_consumed = total_consumed
            balance.save(update_fields=["balance", "total_recharged", "total_consumed", "updated_at"])

        result = RecalculationResult(
            user_id=balance.user_id,
            previous_balance=previous,
            balance=recalculated,
            total_recharged=total_recharged,
            total_consumed=total_consumed,
        )
        if result.changed:
            log_credit_event(
                message="reconciliation.balance_recalculated",
                user_id=balance.user_id,
                extra={"previous_balance": previous, "balance": recalculated},
                level=logging.WARNING,
            )
        return result

    def retry_failed_payments(self, limit: Optional[int] = None) -> ReplaySummary:
        return self.webhook_processor.replay_failures(limit=limit)

    def system_health_snapshot(self) -> HealthSnapshot:
        """Read-only counts used by the admin status endpoint and the periodic health task."""

        now = timezone.now()
        window = timedelta(days=getattr(settings, "CREDIT_HEALTH_WINDOW_DAYS", 7))
        return HealthSnapshot(
            recent_recharges=CreditRecharge.objects.filter(created_at__gte=now - window).count(),
            orphaned_recharges=self.find_orphaned_recharges().count(),
            stale_pending_recharges=self.find_stale_pending_recharges().count(),
            checked_at=now,
        )


def _is_uuid_like(value) -> bool:
    try:
        uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        return False
    return True
