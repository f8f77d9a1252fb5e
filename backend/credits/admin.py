from django.contrib import admin
from django.urls import reverse
from django.utils.html import format_html

from .models import (
    CreditBalance,
    CreditConsumptionConfig,
    CreditPackage,
    CreditRecharge,
    CreditTransaction,
    CustomerProfile,
    StripeSubscription,
    SubscriptionCreditTier,
    UnlinkedSubscription,
    Upload,
    WebhookEventLog,
    WebhookFailure,
)


@admin.register(CreditBalance)
class CreditBalanceAdmin(admin.ModelAdmin):
    """Balances are maintained by the ledger; use recalculation to repair them."""

    list_display = ("user", "balance", "total_recharged", "total_consumed", "updated_at")
    search_fields = ("user__username", "user__email")
    readonly_fields = ("user", "balance", "total_recharged", "total_consumed", "created_at", "updated_at")
    ordering = ("-updated_at",)
    list_select_related = ("user",)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(CreditTransaction)
class CreditTransactionAdmin(admin.ModelAdmin):
    """Read-only audit trail for credit movements."""

    list_display = ("id", "user", "type", "amount", "balance_after", "recharge_link", "created_at")
    search_fields = ("id", "user__username", "user__email", "idempotency_key", "related_recharge__payment_intent_id")
    list_filter = ("type", "created_at")
    readonly_fields = tuple(field.name for field in CreditTransaction._meta.fields)
    ordering = ("-created_at",)
    list_select_related = ("user", "related_recharge")

    fieldsets = (
        ("Transaction", {"fields": ("id", "user", "type", "amount", "balance_after", "description")}),
        ("References", {"fields": ("related_recharge", "related_upload", "idempotency_key", "metadata")}),
        ("Timestamps", {"fields": ("created_at",)}),
    )

    @admin.display(description="Recharge")
    def recharge_link(self, obj):
        if not obj.related_recharge_id:
            return "-"
        url = reverse("admin:credits_creditrecharge_change", args=[obj.related_recharge_id])
        return format_html('<a href="{}">{}</a>', url, obj.related_recharge_id)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(CreditRecharge)
class CreditRechargeAdmin(admin.ModelAdmin):
    list_display = ("id", "user", "package", "amount", "price", "currency", "status", "created_at", "completed_at")
    search_fields = ("id", "user__username", "user__email", "payment_intent_id", "idempotency_key")
    list_filter = ("status", "currency", "created_at")
    readonly_fields = tuple(field.name for field in CreditRecharge._meta.fields)
    ordering = ("-created_at",)
    list_select_related = ("user", "package")

    def has_add_permission(self, request):
        return False


@admin.register(CreditPackage)
class CreditPackageAdmin(admin.ModelAdmin):
    list_display = ("slug", "name", "credits", "price", "currency", "is_active", "sort_order")
    list_filter = ("is_active", "currency")
    search_fields = ("slug", "name")
    ordering = ("sort_order", "price")


@admin.register(CreditConsumptionConfig)
class CreditConsumptionConfigAdmin(admin.ModelAdmin):
    list_display = ("action_type", "credits_required", "is_active", "updated_at")
    list_filter = ("is_active",)
    search_fields = ("action_type", "description")


@admin.register(SubscriptionCreditTier)
class SubscriptionCreditTierAdmin(admin.ModelAdmin):
    list_display = ("name", "stripe_price_id", "unit_amount", "currency", "interval", "credits", "is_active")
    list_filter = ("interval", "currency", "is_active")
    search_fields = ("name", "stripe_price_id")


@admin.register(Upload)
class UploadAdmin(admin.ModelAdmin):
    list_display = ("id", "user", "kind", "credit_consumed", "created_at")
    search_fields = ("id", "key", "user__username")
    list_filter = ("kind", "created_at")
    readonly_fields = ("credit_consumed", "created_at")
    list_select_related = ("user",)


@admin.register(CustomerProfile)
class CustomerProfileAdmin(admin.ModelAdmin):
    list_display = ("user", "stripe_customer_id", "linked_by", "linked_at")
    search_fields = ("user__username", "user__email", "stripe_customer_id")
    list_filter = ("linked_by",)
    list_select_related = ("user",)


@admin.register(StripeSubscription)
class StripeSubscriptionAdmin(admin.ModelAdmin):
    list_display = ("stripe_subscription_id", "user", "status", "price_id", "interval", "current_period_end")
    search_fields = ("stripe_subscription_id", "stripe_customer_id", "user__email")
    list_filter = ("status", "interval")
    readonly_fields = ("created_at", "updated_at")
    list_select_related = ("user",)


@admin.register(UnlinkedSubscription)
class UnlinkedSubscriptionAdmin(admin.ModelAdmin):
    """Subscriptions waiting for an owner; link them through the admin API."""

    list_display = ("subscription", "stripe_customer_id", "customer_email", "created_at", "resolved_at", "resolved_by")
    search_fields = ("subscription__stripe_subscription_id", "stripe_customer_id", "customer_email")
    list_filter = ("resolved_at",)
    readonly_fields = ("subscription", "stripe_customer_id", "customer_email", "reason", "created_at")


@admin.register(WebhookEventLog)
class WebhookEventLogAdmin(admin.ModelAdmin):
    """Monitor webhook processing progress and failures."""

    list_display = ("event_id", "event_type", "status", "attempts", "created_at", "processed_at", "last_error_short")
    search_fields = ("event_id", "event_type", "payload_hash")
    list_filter = ("status", "created_at")
    readonly_fields = tuple(field.name for field in WebhookEventLog._meta.fields)
    ordering = ("-created_at",)

    @admin.display(description="Last Error")
    def last_error_short(self, obj):
        if not obj.last_error:
            return "-"
        snippet = obj.last_error.strip().splitlines()[0]
        if len(snippet) > 120:
            snippet = f"{snippet[:117]}..."
        return snippet


@admin.register(WebhookFailure)
class WebhookFailureAdmin(admin.ModelAdmin):
    """Inspect failed webhook events; replay with ``manage.py replay_webhook_failures``."""

    list_display = ("event_id", "event_type", "retryable", "retry_count", "recharge_id", "last_attempt_at", "resolved_at")
    search_fields = ("event_id", "event_type", "payment_intent_id", "recharge_id")
    list_filter = ("event_type", "retryable", "resolved_at")
    readonly_fields = (
        "event_id",
        "event_type",
        "payload",
        "failure_reason",
        "retryable",
        "payment_intent_id",
        "recharge_id",
        "retry_count",
        "last_attempt_at",
        "created_at",
    )
    ordering = ("-created_at",)
