"""Typed webhook events decoded from raw Stripe payloads."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from typing import Any, Dict, Optional, Union

from credits.services.recharges import RECHARGE_PAYMENT_TYPE


class MalformedEvent(ValueError):
    """Raised when an event is missing the fields its type requires."""


@dataclass(frozen=True)
class PaymentSucceeded:
    event_id: str
    payment_intent_id: str
    amount: Optional[int] = None
    currency: str = ""
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def is_credit_recharge(self) -> bool:
        return self.metadata.get("type") == RECHARGE_PAYMENT_TYPE

    @property
    def recharge_id(self) -> Optional[str]:
        return self.metadata.get("rechargeId") or None


@dataclass(frozen=True)
class PaymentCanceled:
    event_id: str
    payment_intent_id: str
    reason: str = ""
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def is_credit_recharge(self) -> bool:
        return self.metadata.get("type") == RECHARGE_PAYMENT_TYPE

    @property
    def recharge_id(self) -> Optional[str]:
        return self.metadata.get("rechargeId") or None


@dataclass(frozen=True)
class SubscriptionChanged:
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"

    event_id: str
    action: str
    subscription_id: str
    customer_id: str
    status: str
    price_id: str = ""
    product_id: str = ""
    unit_amount: Optional[int] = None
    currency: str = ""
    interval: str = ""
    current_period_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None


@dataclass(frozen=True)
class UnsupportedEvent:
    event_id: str
    event_type: str


WebhookEvent = Union[PaymentSucceeded, PaymentCanceled, SubscriptionChanged, UnsupportedEvent]

_SUBSCRIPTION_ACTIONS = {
    "customer.subscription.created": SubscriptionChanged.CREATED,
    "customer.subscription.updated": SubscriptionChanged.UPDATED,
    "customer.subscription.deleted": SubscriptionChanged.DELETED,
}


def decode_event(event: Dict[str, Any]) -> WebhookEvent:
    """Validate the raw event shape once and return its typed form."""

    event_id = str(event.get("id") or "")
    event_type = str(event.get("type") or "")
    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None

    if event_type in {"payment_intent.succeeded", "payment_intent.canceled"}:
        if not isinstance(obj, dict) or not obj.get("id"):
            raise MalformedEvent(f"{event_type} event {event_id} has no payment intent object.")
        metadata = _string_map(obj.get("metadata"))
        if event_type == "payment_intent.succeeded":
            return PaymentSucceeded(
                event_id=event_id,
                payment_intent_id=str(obj["id"]),
                amount=_coerce_int(obj.get("amount_received", obj.get("amount"))),
                currency=str(obj.get("currency") or ""),
                metadata=metadata,
            )
        return PaymentCanceled(
            event_id=event_id,
            payment_intent_id=str(obj["id"]),
            reason=str(obj.get("cancellation_reason") or ""),
            metadata=metadata,
        )

    if event_type in _SUBSCRIPTION_ACTIONS:
        if not isinstance(obj, dict) or not obj.get("id"):
            raise MalformedEvent(f"{event_type} event {event_id} has no subscription object.")
        customer = obj.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")
        if not customer:
            raise MalformedEvent(f"Subscription {obj['id']} has no customer reference.")

        item = _first_item(obj)
        price = _mapping(item.get("price"), f"Subscription {obj['id']} price")
        product = price.get("product")
        if isinstance(product, dict):
            product = product.get("id")
        recurring = _mapping(price.get("recurring"), f"Subscription {obj['id']} recurring")

        return SubscriptionChanged(
            event_id=event_id,
            action=_SUBSCRIPTION_ACTIONS[event_type],
            subscription_id=str(obj["id"]),
            customer_id=str(customer),
            status=str(obj.get("status") or ""),
            price_id=str(price.get("id") or ""),
            product_id=str(product or ""),
            unit_amount=_coerce_int(price.get("unit_amount")),
            currency=str(price.get("currency") or "").lower(),
            interval=str(recurring.get("interval") or ""),
            current_period_end=_coerce_timestamp(obj.get("current_period_end") or item.get("current_period_end")),
            canceled_at=_coerce_timestamp(obj.get("canceled_at")),
        )

    return UnsupportedEvent(event_id=event_id, event_type=event_type)


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    label = f"Subscription {subscription['id']} items"
    items = _mapping(subscription.get("items"), label).get("data") or []
    if not isinstance(items, list):
        raise MalformedEvent(f"{label} is not a list.")
    if not items:
        return {}
    return _mapping(items[0], label)


def _mapping(value: Any, label: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise MalformedEvent(f"{label} is not an object.")
    return value


def _string_map(value: Any) -> Dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(key): "" if item is None else str(item) for key, item in value.items()}


def _coerce_int(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _coerce_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=dt_timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None
