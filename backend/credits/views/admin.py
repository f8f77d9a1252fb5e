"""Admin-key protected repair and subscription linking endpoints."""
from __future__ import annotations

import dataclasses
import logging

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from credits.observability.logging import log_credit_event
from credits.permissions import HasCreditsAdminKey
from credits.serializers import (
    LinkSubscriptionSerializer,
    RepairActionSerializer,
    UnlinkedSubscriptionSerializer,
)
from credits.services import build_reconciliation_service, build_webhook_processor
from credits.services.ledger import BalanceIntegrityError
from credits.services.recharges import RechargeError, RechargeNotFound
from credits.services.subscriptions import (
    SubscriptionLinkError,
    SubscriptionNotFound,
    UnmappedSubscriptionPrice,
)

logger = logging.getLogger(__name__)

ADMIN_ACTOR = "admin_api"


class CreditRepairView(APIView):
    """GET returns the ledger health snapshot and detected drift; POST runs one repair action."""

    authentication_classes = []
    permission_classes = [HasCreditsAdminKey]

    def get(self, request):
        service = build_reconciliation_service()
        snapshot = service.system_health_snapshot()
        payload = snapshot.as_dict()
        payload["drift"] = [drift.as_dict() for drift in service.detect_drift()]
        return Response(payload)

    def post(self, request):
        serializer = RepairActionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        action = data["action"]
        service = build_reconciliation_service()

        log_credit_event(message="admin.repair_requested", actor=ADMIN_ACTOR, user_id=data.get("user_id"), extra={"action": action})

        if action == RepairActionSerializer.FIX_ORPHANED_RECHARGES:
            result = service.repair_orphaned_recharges(user_id=data.get("user_id")).as_dict()
        elif action == RepairActionSerializer.RETRY_FAILED_PAYMENTS:
            result = dataclasses.asdict(service.retry_failed_payments(limit=data.get("limit")))
        elif action == RepairActionSerializer.RECALCULATE_BALANCE:
            try:
                result = service.recalculate_balance(data["user_id"]).as_dict()
            except BalanceIntegrityError as exc:
                logger.error("Balance recalculation refused for user %s: %s", data["user_id"], exc)
                return Response({"action": action, "detail": str(exc)}, status=status.HTTP_409_CONFLICT)
        else:
            try:
                result = service.repair_orphaned_recharge(data["recharge_id"]).as_dict()
            except RechargeNotFound as exc:
                return Response({"action": action, "detail": str(exc)}, status=status.HTTP_404_NOT_FOUND)
            except RechargeError as exc:
                return Response({"action": action, "detail": str(exc)}, status=status.HTTP_409_CONFLICT)

        return Response({"action": action, "result": result})


class UnlinkedSubscriptionView(APIView):
    """List subscriptions with no resolvable owner and link them to users."""

    authentication_classes = []
    permission_classes = [HasCreditsAdminKey]

    def get(self, request):
        entries = build_webhook_processor().subscriptions.list_unlinked()
        return Response(UnlinkedSubscriptionSerializer(entries, many=True).data)

    def post(self, request):
        serializer = LinkSubscriptionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            result = build_webhook_processor().subscriptions.link_subscription(
                data["subscription_id"], data["user_id"], actor=ADMIN_ACTOR
            )
        except SubscriptionNotFound as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_404_NOT_FOUND)
        except SubscriptionLinkError as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)
        except UnmappedSubscriptionPrice as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_409_CONFLICT)

        return Response(
            {
                "subscription_id": result.subscription.stripe_subscription_id,
                "user_id": result.subscription.user_id,
                "bonus_credits": result.bonus_credits,
                "bonus_transaction_id": str(result.bonus_transaction_id) if result.bonus_transaction_id else None,
            }
        )
