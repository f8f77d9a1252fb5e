"""DRF serializers for credit balances, recharges, consumption and admin repair."""
from __future__ import annotations

from typing import Any, Dict

from django.utils.translation import gettext_lazy as _
from rest_framework import serializers

from credits.models import (
    CreditPackage,
    CreditRecharge,
    CreditTransaction,
    StripeSubscription,
    UnlinkedSubscription,
)


class CreditPackageSerializer(serializers.ModelSerializer):
    class Meta:
        model = CreditPackage
        fields = ("id", "slug", "name", "credits", "price", "currency", "sort_order")
        read_only_fields = fields


class CreditTransactionSerializer(serializers.ModelSerializer):
    related_recharge_id = serializers.UUIDField(read_only=True, allow_null=True)
    related_upload_id = serializers.UUIDField(read_only=True, allow_null=True)

    class Meta:
        model = CreditTransaction
        fields = (
            "id",
            "type",
            "amount",
            "balance_after",
            "description",
            "related_recharge_id",
            "related_upload_id",
            "metadata",
            "created_at",
        )
        read_only_fields = fields


class CreditRechargeSerializer(serializers.ModelSerializer):
    package = serializers.SlugRelatedField(slug_field="slug", read_only=True)

    class Meta:
        model = CreditRecharge
        fields = (
            "id",
            "package",
            "amount",
            "price",
            "currency",
            "status",
            "payment_intent_id",
            "failure_reason",
            "created_at",
            "completed_at",
        )
        read_only_fields = fields


class BalanceSerializer(serializers.Serializer):
    """Serialize a ``BalanceSnapshot``."""

    balance = serializers.IntegerField()
    total_recharged = serializers.IntegerField()
    total_consumed = serializers.IntegerField()
    updated_at = serializers.DateTimeField(allow_null=True)


class CreditActionSerializer(serializers.Serializer):
    action_type = serializers.CharField(max_length=64)


class CreditConsumptionSerializer(CreditActionSerializer):
    upload_id = serializers.UUIDField(required=False, allow_null=True)
    description = serializers.CharField(required=False, allow_blank=True, max_length=255)


class RechargeCreateSerializer(serializers.Serializer):
    package_id = serializers.UUIDField()
    idempotency_key = serializers.CharField(required=False, allow_blank=False, max_length=255)


class RepairActionSerializer(serializers.Serializer):
    """Validate admin repair requests; each action declares the fields it needs."""

    FIX_ORPHANED_RECHARGES = "fix_orphaned_recharges"
    RETRY_FAILED_PAYMENTS = "retry_failed_payments"
    RECALCULATE_BALANCE = "recalculate_balance"
    FIX_SPECIFIC_RECHARGE = "fix_specific_recharge"

    action = serializers.ChoiceField(
        choices=(FIX_ORPHANED_RECHARGES, RETRY_FAILED_PAYMENTS, RECALCULATE_BALANCE, FIX_SPECIFIC_RECHARGE)
    )
    user_id = serializers.IntegerField(required=False, min_value=1)
    recharge_id = serializers.CharField(required=False, max_length=64)
    limit = serializers.IntegerField(required=False, min_value=1, max_value=500)

    def validate(self, attrs: Dict[str, Any]) -> Dict[str, Any]:
        action = attrs["action"]
        if action == self.RECALCULATE_BALANCE and not attrs.get("user_id"):
            raise serializers.ValidationError({"user_id": [_("user_id is required for recalculate_balance.")]})
        if action == self.FIX_SPECIFIC_RECHARGE and not attrs.get("recharge_id"):
            raise serializers.ValidationError({"recharge_id": [_("recharge_id is required for fix_specific_recharge.")]})
        return attrs


class StripeSubscriptionSerializer(serializers.ModelSerializer):
    class Meta:
        model = StripeSubscription
        fields = (
            "stripe_subscription_id",
            "stripe_customer_id",
            "user_id",
            "status",
            "price_id",
            "unit_amount",
            "currency",
            "interval",
            "current_period_end",
            "canceled_at",
        )
        read_only_fields = fields


class UnlinkedSubscriptionSerializer(serializers.ModelSerializer):
    subscription = StripeSubscriptionSerializer(read_only=True)

    class Meta:
        model = UnlinkedSubscription
        fields = ("id", "subscription", "stripe_customer_id", "customer_email", "reason", "created_at")
        read_only_fields = fields


class LinkSubscriptionSerializer(serializers.Serializer):
    subscription_id = serializers.CharField(max_length=255)
    user_id = serializers.IntegerField(min_value=1)
