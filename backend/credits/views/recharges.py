"""Credit package listing and recharge creation."""
from __future__ import annotations

import logging

from rest_framework import status
from rest_framework.generics import ListAPIView
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from credits.filters import CreditRechargeFilter
from credits.models import CreditPackage, CreditRecharge
from credits.pagination import BoundedLimitOffsetPagination
from credits.serializers import CreditPackageSerializer, CreditRechargeSerializer, RechargeCreateSerializer
from credits.services import build_recharge_manager
from credits.services.recharges import PackageNotFound
from credits.services.stripe_gateway import StripeConfigurationError, StripeServiceError

logger = logging.getLogger(__name__)


class CreditPackageListView(ListAPIView):
    serializer_class = CreditPackageSerializer
    permission_classes = [IsAuthenticated]
    pagination_class = None

    def get_queryset(self):
        return CreditPackage.objects.filter(is_active=True).order_by("sort_order", "price")


class CreditRechargeListCreateView(ListAPIView):
    """List the user's recharges; POST creates (or replays) a recharge intent.

    The idempotency key comes from the ``Idempotency-Key`` header or the body.
    """

    serializer_class = CreditRechargeSerializer
    permission_classes = [IsAuthenticated]
    pagination_class = BoundedLimitOffsetPagination
    filterset_class = CreditRechargeFilter

    def get_queryset(self):
        return (
            CreditRecharge.objects.filter(user=self.request.user)
            .select_related("package")
            .order_by("-created_at")
        )

    def post(self, request):
        data = request.data.copy() if hasattr(request.data, "copy") else dict(request.data)
        header_key = request.headers.get("Idempotency-Key")
        if header_key:
            data["idempotency_key"] = header_key

        serializer = RechargeCreateSerializer(data=data)
        serializer.is_valid(raise_exception=True)

        try:
            intent = build_recharge_manager().create_recharge(
                request.user.pk,
                serializer.validated_data["package_id"],
                serializer.validated_data.get("idempotency_key"),
            )
        except PackageNotFound as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)
        except (StripeConfigurationError, StripeServiceError) as exc:
            logger.warning("Unable to create Stripe payment intent for user %s: %s", request.user.pk, exc)
            return Response({"detail": str(exc)}, status=status.HTTP_502_BAD_GATEWAY)

        payload = CreditRechargeSerializer(intent.recharge).data
        payload["client_secret"] = intent.client_secret
        return Response(payload, status=status.HTTP_201_CREATED if intent.created else status.HTTP_200_OK)
