"""Stripe webhook processing: decode, dispatch, retry and dead-letter."""
from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, Optional

from django.db import transaction
from django.utils import timezone

from credits.models import WebhookEventLog, WebhookFailure
from credits.observability.logging import log_credit_event
from credits.observability.metrics import (
    WEBHOOK_DEAD_LETTER_COUNT,
    WEBHOOK_EVENT_COUNT,
    WEBHOOK_RETRY_COUNT,
)
from credits.services.events import (
    MalformedEvent,
    PaymentCanceled,
    PaymentSucceeded,
    SubscriptionChanged,
    UnsupportedEvent,
    WebhookEvent,
    decode_event,
)
from credits.services.ledger import CreditLedgerError
from credits.services.recharges import RechargeError, RechargeManager
from credits.services.retry import RetryExhausted, RetryPolicy
from credits.services.subscriptions import SubscriptionError, SubscriptionService

logger = logging.getLogger(__name__)


class WebhookProcessingError(Exception):
    """Raised when a webhook cannot be processed and retrying will not help."""


class MissingRechargeReference(WebhookProcessingError):
    """Raised when a credit recharge payment carries no recharge id."""


NON_RETRYABLE_ERRORS = (
    WebhookProcessingError,
    MalformedEvent,
    RechargeError,
    SubscriptionError,
    CreditLedgerError,
)


@dataclass(frozen=True)
class HandlerResult:
    """Outcome of a webhook handler invocation."""

    status: str
    detail: str = ""
    user_id: Optional[Any] = None

    PROCESSED = "processed"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    DEAD_LETTER = "dead_letter"
    ERROR = "error"


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    status: str
    detail: str = ""
    attempts: int = 0

    @property
    def http_status(self) -> int:
        return 500 if self.status == HandlerResult.ERROR else 200

    @property
    def succeeded(self) -> bool:
        return self.status in {HandlerResult.PROCESSED, HandlerResult.IGNORED, HandlerResult.DUPLICATE}

    def as_dict(self) -> Dict[str, Any]:
        return {"event_id": self.event_id, "status": self.status, "detail": self.detail, "attempts": self.attempts}


@dataclass(frozen=True)
class ReplaySummary:
    total: int
    succeeded: int
    failed: int


class WebhookProcessor:
    """Applies authenticated Stripe events to the ledger.

    Every event is handled in its own atomic unit per attempt. Transient
    failures are retried by ``retry_policy``; permanent ones are stored in
    ``WebhookFailure`` for replay or manual repair.
    """

    def __init__(
        self,
        *,
        recharges: Optional[RechargeManager] = None,
        subscriptions: Optional[SubscriptionService] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.recharges = recharges or RechargeManager()
        self.subscriptions = subscriptions or SubscriptionService(ledger=self.recharges.ledger)
        policy = retry_policy or RetryPolicy()
        self.retry_policy = replace(policy, giveup=tuple(dict.fromkeys(policy.giveup + NON_RETRYABLE_ERRORS)))
        self._handlers = {
            PaymentSucceeded: self._handle_payment_succeeded,
            PaymentCanceled: self._handle_payment_canceled,
            SubscriptionChanged: self._handle_subscription_changed,
            UnsupportedEvent: self._handle_unsupported,
        }

    def process(self, event: Dict[str, Any]) -> WebhookOutcome:
        event_id = str(event.get("id") or "")
        event_type = str(event.get("type") or "")
        log_entry = _record_receipt(event_id, event_type, _hash_event_payload(event))

        def _on_retry(attempt: int, exc: BaseException, delay: float) -> None:
            WEBHOOK_RETRY_COUNT.labels(event_type=event_type or "unknown").inc()

        try:
            decoded = decode_event(event)
            result, attempts = self.retry_policy.call(self._dispatch_atomically, decoded, on_retry=_on_retry)
        except NON_RETRYABLE_ERRORS as exc:
            logger.warning("Webhook event %s (%s) cannot be processed: %s", event_id, event_type, exc)
            _record_failure(event, reason=_describe(exc), retryable=False)
            outcome = WebhookOutcome(event_id, event_type, HandlerResult.DEAD_LETTER, _describe(exc), attempts=1)
        except RetryExhausted as exc:
            logger.error(
                "Webhook event %s (%s) failed after %s attempts: %s",
                event_id,
                event_type,
                exc.attempts,
                exc.last_error,
            )
            _record_failure(event, reason=_describe(exc.last_error), retryable=True)
            outcome = WebhookOutcome(event_id, event_type, HandlerResult.ERROR, _describe(exc.last_error), exc.attempts)
        else:
            outcome = WebhookOutcome(event_id, event_type, result.status, result.detail, attempts)
            log_credit_event(
                message="webhook.handled",
                event_id=event_id,
                user_id=result.user_id,
                extra={"event_type": event_type, "status": result.status, "attempts": attempts},
            )

        _mark_event(log_entry, outcome)
        WEBHOOK_EVENT_COUNT.labels(event_type=event_type or "unknown", outcome=outcome.status).inc()
        return outcome

    def dispatch(self, event: WebhookEvent) -> HandlerResult:
        """Route a decoded event to its handler."""

        return self._handlers[type(event)](event)

    def replay_failures(self, *, event_ids: Optional[Iterable[str]] = None, limit: Optional[int] = None) -> ReplaySummary:
        """Re-run unresolved stored failures through ``process``."""

        queryset = WebhookFailure.objects.filter(resolved_at__isnull=True).order_by("created_at")
        if event_ids:
            queryset = queryset.filter(event_id__in=list(event_ids))
        if limit is not None:
            queryset = queryset[:limit]

        failures = list(queryset)
        succeeded = 0
        for failure in failures:
            payload = dict(failure.payload or {})
            payload.setdefault("id", failure.event_id)
            payload.setdefault("type", failure.event_type)

            outcome = self.process(payload)
            if outcome.succeeded:
                WebhookFailure.objects.filter(pk=failure.pk).update(resolved_at=timezone.now())
                succeeded += 1

        summary = ReplaySummary(total=len(failures), succeeded=succeeded, failed=len(failures) - succeeded)
        logger.info("Webhook failure replay finished: %s", summary)
        return summary

    def _dispatch_atomically(self, event: WebhookEvent) -> HandlerResult:
        with transaction.atomic():
            return self.dispatch(event)

    def _handle_payment_succeeded(self, event: PaymentSucceeded) -> HandlerResult:
        if not event.is_credit_recharge:
            return HandlerResult(status=HandlerResult.IGNORED, detail="Payment is not a credit recharge")
        if not event.recharge_id:
            raise MissingRechargeReference(
                f"Payment intent {event.payment_intent_id} has no rechargeId metadata."
            )

        result = self.recharges.complete_recharge(event.recharge_id, event.payment_intent_id)
        status = HandlerResult.DUPLICATE if result.duplicate else HandlerResult.PROCESSED
        return HandlerResult(
            status=status,
            detail=f"Recharge {result.recharge_id} balance={result.new_balance}",
            user_id=event.metadata.get("userId"),
        )

    def _handle_payment_canceled(self, event: PaymentCanceled) -> HandlerResult:
        if not event.is_credit_recharge or not event.recharge_id:
            return HandlerResult(status=HandlerResult.IGNORED, detail="Payment is not a credit recharge")

        recharge = self.recharges.fail_recharge(event.recharge_id, reason=event.reason or "payment_intent.canceled")
        return HandlerResult(
            status=HandlerResult.PROCESSED,
            detail=f"Recharge {recharge.pk} marked failed",
            user_id=recharge.user_id,
        )

    def _handle_subscription_changed(self, event: SubscriptionChanged) -> HandlerResult:
        result = self.subscriptions.sync(event)
        if not result.linked:
            return HandlerResult(
                status=HandlerResult.PROCESSED,
                detail=f"Subscription {event.subscription_id} queued as unlinked",
            )
        detail = f"Subscription {event.subscription_id} {event.action}"
        if result.bonus_credits:
            detail = f"{detail}; {result.bonus_credits} credits granted"
        return HandlerResult(status=HandlerResult.PROCESSED, detail=detail, user_id=result.subscription.user_id)

    def _handle_unsupported(self, event: UnsupportedEvent) -> HandlerResult:
        logger.info("Ignoring unsupported Stripe event type '%s'.", event.event_type)
        return HandlerResult(status=HandlerResult.IGNORED, detail="Unsupported event type")


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


def _hash_event_payload(event_data: Dict[str, Any]) -> str:
    try:
        serialized = json.dumps(event_data, sort_keys=True, separators=(",", ":"))
    except TypeError:
        serialized = json.dumps(event_data, sort_keys=True, default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def _record_receipt(event_id: str, event_type: str, payload_hash: str) -> WebhookEventLog:
    return WebhookEventLog.objects.create(
        event_id=event_id or "",
        event_type=event_type or "",
        payload_hash=payload_hash,
        status=WebhookEventLog.Status.RECEIVED,
    )


def _mark_event(log_entry: WebhookEventLog, outcome: WebhookOutcome) -> None:
    status = {
        HandlerResult.PROCESSED: WebhookEventLog.Status.PROCESSED,
        HandlerResult.IGNORED: WebhookEventLog.Status.IGNORED,
        HandlerResult.DUPLICATE: WebhookEventLog.Status.DUPLICATE,
        HandlerResult.DEAD_LETTER: WebhookEventLog.Status.DEAD_LETTER,
    }.get(outcome.status, WebhookEventLog.Status.FAILED)

    log_entry.status = status
    log_entry.attempts = outcome.attempts
    log_entry.last_error = "" if outcome.succeeded else outcome.detail
    log_entry.processed_at = timezone.now()
    log_entry.save(update_fields=["status", "attempts", "last_error", "processed_at"])


def _record_failure(event: Dict[str, Any], *, reason: str, retryable: bool) -> WebhookFailure:
    event_id = str(event.get("id") or "") or f"anon:{uuid.uuid4()}"
    event_type = str(event.get("type") or "")
    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        obj = {}
    metadata = obj.get("metadata") if isinstance(obj.get("metadata"), dict) else {}
    payment_intent_id = str(obj.get("id") or "") if event_type.startswith("payment_intent.") else ""

    defaults = {
        "event_type": event_type,
        "payload": event,
        "failure_reason": reason or "unknown",
        "retryable": retryable,
        "payment_intent_id": payment_intent_id,
        "recharge_id": str(metadata.get("rechargeId") or ""),
        "last_attempt_at": timezone.now(),
    }
    failure, created = WebhookFailure.objects.get_or_create(event_id=event_id, defaults=defaults)

    if not created:
        for name, value in defaults.items():
            setattr(failure, name, value)
        failure.retry_count = (failure.retry_count or 0) + 1
        failure.resolved_at = None
        failure.save(update_fields=[*defaults.keys(), "retry_count", "resolved_at"])

    WEBHOOK_DEAD_LETTER_COUNT.labels(
        event_type=event_type or "unknown",
        reason="retryable" if retryable else "manual_review",
    ).inc()
    log_credit_event(
        message="webhook.dead_lettered",
        event_id=event_id,
        extra={"event_type": event_type, "reason": reason, "retryable": retryable},
        level=logging.WARNING,
    )
    return failure
