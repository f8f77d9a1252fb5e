"""Balance, history and consumption endpoints for the authenticated user."""
from __future__ import annotations

import logging

from rest_framework import status
from rest_framework.generics import ListAPIView
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from credits.filters import CreditTransactionFilter
from credits.models import CreditTransaction
from credits.pagination import BoundedLimitOffsetPagination
from credits.serializers import (
    BalanceSerializer,
    CreditActionSerializer,
    CreditConsumptionSerializer,
    CreditTransactionSerializer,
)
from credits.services import build_credit_ledger
from credits.services.ledger import UnknownActionType

logger = logging.getLogger(__name__)


class CreditBalanceView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        snapshot = build_credit_ledger().get_balance(request.user.pk)
        return Response(BalanceSerializer(snapshot).data)


class CreditTransactionListView(ListAPIView):
    """Newest-first transaction log, paged with ``limit``/``offset``."""

    serializer_class = CreditTransactionSerializer
    permission_classes = [IsAuthenticated]
    pagination_class = BoundedLimitOffsetPagination
    filterset_class = CreditTransactionFilter

    def get_queryset(self):
        return CreditTransaction.objects.filter(user=self.request.user).order_by("-created_at", "-id")


class CreditCheckView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request):
        serializer = CreditActionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        action_type = serializer.validated_data["action_type"]

        ledger = build_credit_ledger()
        try:
            config = ledger.get_consumption_config(action_type)
        except UnknownActionType as exc:
            logger.warning("Credit check for unknown action type '%s' by user %s.", action_type, request.user.pk)
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)

        balance = ledger.get_balance(request.user.pk).balance
        return Response(
            {
                "action_type": action_type,
                "sufficient": balance >= config.credits_required,
                "balance": balance,
                "required": config.credits_required,
            }
        )


class CreditConsumeView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request):
        serializer = CreditConsumptionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            result = build_credit_ledger().consume_credits(
                request.user.pk,
                data["action_type"],
                upload_id=data.get("upload_id"),
                description=data.get("description") or None,
            )
        except UnknownActionType as exc:
            logger.warning("Consumption for unknown action type '%s' by user %s.", data["action_type"], request.user.pk)
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)

        if not result.success:
            return Response(result.as_dict(), status=status.HTTP_402_PAYMENT_REQUIRED)
        return Response(result.as_dict(), status=status.HTTP_200_OK)
