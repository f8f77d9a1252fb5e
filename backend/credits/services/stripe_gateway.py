"""Stripe helpers: webhook authentication and the payment gateway used by the credit flows."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import stripe
from django.conf import settings

logger = logging.getLogger(__name__)


class StripeConfigurationError(RuntimeError):
    """Raised when mandatory Stripe configuration is missing."""


class StripeServiceError(RuntimeError):
    """Raised when Stripe returns an operational error."""


class StripeWebhookSignatureError(StripeServiceError):
    """Raised when webhook signature validation fails."""


class MalformedWebhookPayload(StripeServiceError):
    """Raised when an authenticated webhook body is not a JSON event object."""


def _configure_stripe() -> None:
    secret_key = getattr(settings, "STRIPE_SECRET_KEY", "")
    if not secret_key:
        raise StripeConfigurationError("STRIPE_SECRET_KEY is not configured.")

    stripe.api_key = secret_key
    api_version = getattr(settings, "STRIPE_API_VERSION", None)
    if api_version:
        stripe.api_version = api_version


def _stripe_obj_to_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if type(obj) is dict:
        return obj
    for attr in ("to_dict", "to_dict_recursive"):
        converter = getattr(obj, attr, None)
        if callable(converter):
            return converter()
    return dict(obj)


def _stringify_metadata(values: Dict[str, Any]) -> Dict[str, str]:
    return {key: "" if value is None else str(value) for key, value in values.items()}


def parse_event(payload: str, sig_header: str, secret: Optional[str] = None) -> Dict[str, Any]:
    """Authenticate a Stripe webhook body and return the event as a plain dictionary."""

    if not sig_header:
        raise StripeWebhookSignatureError("Stripe-Signature header is missing.")

    webhook_secret = secret or getattr(settings, "STRIPE_WEBHOOK_SECRET", "")
    if not webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not configured; rejecting webhook.")
        raise StripeWebhookSignatureError("STRIPE_WEBHOOK_SECRET is not configured.")

    try:
        stripe.WebhookSignature.verify_header(
            payload,
            sig_header,
            webhook_secret,
            tolerance=stripe.Webhook.DEFAULT_TOLERANCE,
        )
    except stripe.SignatureVerificationError as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        raise StripeWebhookSignatureError("Stripe webhook signature verification failed.") from exc

    try:
        event = json.loads(payload)
    except ValueError as exc:
        logger.error("Received malformed Stripe webhook payload: %s", exc)
        raise MalformedWebhookPayload("Malformed Stripe webhook payload.") from exc

    if not isinstance(event, dict):
        raise MalformedWebhookPayload("Stripe webhook payload is not an event object.")
    return event


class StripeGateway:
    """Payment processor calls used by recharges and subscription linking.

    Results are returned as plain dictionaries so that callers and test fakes
    share one shape.
    """

    def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        metadata: Dict[str, Any],
        idempotency_key: str,
        customer_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        _configure_stripe()
        params: Dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "metadata": _stringify_metadata(metadata),
            "automatic_payment_methods": {"enabled": True},
        }
        if customer_id:
            params["customer"] = customer_id
        try:
            intent = stripe.PaymentIntent.create(idempotency_key=idempotency_key, **params)
        except stripe.StripeError as exc:
            logger.warning("Failed to create Stripe payment intent (key=%s): %s", idempotency_key, exc)
            raise StripeServiceError(str(exc)) from exc
        return _stripe_obj_to_dict(intent)

    def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        if not payment_intent_id:
            raise ValueError("payment_intent_id is required.")
        _configure_stripe()
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id)
        except stripe.StripeError as exc:
            logger.warning("Failed to retrieve Stripe payment intent %s: %s", payment_intent_id, exc)
            raise StripeServiceError(str(exc)) from exc
        return _stripe_obj_to_dict(intent)

    def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        if not customer_id:
            raise ValueError("customer_id is required.")
        _configure_stripe()
        try:
            customer = stripe.Customer.retrieve(customer_id)
        except stripe.StripeError as exc:
            logger.warning("Failed to retrieve Stripe customer %s: %s", customer_id, exc)
            raise StripeServiceError(str(exc)) from exc
        return _stripe_obj_to_dict(customer)

    def update_customer_metadata(self, customer_id: str, metadata: Dict[str, Any]) -> None:
        _configure_stripe()
        try:
            stripe.Customer.modify(customer_id, metadata=_stringify_metadata(metadata))
        except stripe.StripeError as exc:
            logger.warning("Failed to update metadata for Stripe customer %s: %s", customer_id, exc)
            raise StripeServiceError(str(exc)) from exc
