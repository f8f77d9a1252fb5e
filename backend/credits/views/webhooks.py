"""Stripe webhook endpoint for credit recharges and subscriptions."""
from __future__ import annotations

import logging
from typing import Optional

from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from credits.services import build_webhook_processor
from credits.services.stripe_gateway import (
    MalformedWebhookPayload,
    StripeWebhookSignatureError,
    parse_event,
)

logger = logging.getLogger(__name__)


@method_decorator(csrf_exempt, name="dispatch")
class StripeWebhookView(APIView):
    """Authenticate a Stripe event and apply it before acknowledging.

    200 once the event is handled (or parked for manual review), 400 for an
    unauthenticated or malformed body, 500 when retries are exhausted so that
    Stripe redelivers.
    """

    authentication_classes = []
    permission_classes = []
    http_method_names = ["post"]

    def post(self, request, *args, **kwargs):
        sig_header = request.headers.get("Stripe-Signature")
        payload = self._decode_payload(request.body)
        if payload is None:
            logger.error("Unable to decode Stripe webhook payload.")
            return Response({"detail": "Undecodable payload."}, status=status.HTTP_400_BAD_REQUEST)

        try:
            event = parse_event(payload=payload, sig_header=sig_header or "")
        except MalformedWebhookPayload as exc:
            logger.warning("Stripe webhook rejected due to malformed payload: %s", exc)
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)
        except StripeWebhookSignatureError:
            return Response({"detail": "Invalid signature."}, status=status.HTTP_400_BAD_REQUEST)

        outcome = build_webhook_processor().process(event)
        if outcome.http_status >= 500:
            logger.error("Stripe event %s (%s) not processed; asking for redelivery.", outcome.event_id, outcome.event_type)
        return Response(outcome.as_dict(), status=outcome.http_status)

    @staticmethod
    def _decode_payload(body: bytes) -> Optional[str]:
        if not body:
            return ""
        try:
            return body.decode("utf-8")
        except UnicodeDecodeError:
            return None
