"""Credit models for balances, the transaction log, recharges, subscriptions and webhook logging."""
import uuid

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import F, Q
from django.utils import timezone


def _default_currency() -> str:
    """Resolve default billing currency from settings."""
    return getattr(settings, "STRIPE_CURRENCY", "usd").lower()


class CreditBalance(models.Model):
    """Current credit snapshot for a single user.

    ``balance`` always equals ``total_recharged - total_consumed`` and the
    sum of the user's ``CreditTransaction.amount`` values.
    """

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="credit_balance",
        help_text="User owning this balance.",
    )
    balance = models.IntegerField(default=0, help_text="Spendable credits.")
    total_recharged = models.IntegerField(default=0, help_text="Lifetime credits added.")
    total_consumed = models.IntegerField(default=0, help_text="Lifetime credits spent.")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "credits_balance"
        verbose_name = "Credit balance"
        verbose_name_plural = "Credit balances"
        ordering = ["user_id"]
        constraints = [
            models.CheckConstraint(condition=Q(balance__gte=0), name="credit_balance_non_negative"),
            models.CheckConstraint(
                condition=Q(balance=F("total_recharged") - F("total_consumed")),
                name="credit_balance_matches_totals",
            ),
        ]

    def __str__(self):
        return f"CreditBalance<{self.user_id}:{self.balance}>"


class CreditPackage(models.Model):
    """Purchasable credit pack offered for one-off recharges."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    slug = models.SlugField(max_length=64, unique=True)
    name = models.CharField(max_length=120)
    credits = models.PositiveIntegerField(validators=[MinValueValidator(1)], help_text="Credits granted on purchase.")
    price = models.PositiveIntegerField(help_text="Price in currency minor units (e.g. cents).")
    currency = models.CharField(max_length=3, default=_default_currency)
    is_active = models.BooleanField(default=True)
    sort_order = models.IntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "credits_package"
        verbose_name = "Credit package"
        verbose_name_plural = "Credit packages"
        ordering = ["sort_order", "price"]

    def __str__(self):
        return f"{self.name} ({self.credits} credits)"


class CreditConsumptionConfig(models.Model):
    """Cost in credits of a billable action type."""

    action_type = models.CharField(max_length=64, unique=True)
    credits_required = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    description = models.CharField(max_length=255, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "credits_consumption_config"
        verbose_name = "Credit consumption config"
        verbose_name_plural = "Credit consumption configs"
        ordering = ["action_type"]
        constraints = [
            models.CheckConstraint(condition=Q(credits_required__gte=1), name="credit_consumption_positive_cost"),
        ]

    def __str__(self):
        return f"{self.action_type}={self.credits_required}"


class Upload(models.Model):
    """User upload processed by a paid action; stamped with the credits it consumed."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="uploads",
    )
    key = models.CharField(max_length=512, help_text="Storage key of the uploaded file.")
    kind = models.CharField(max_length=32, blank=True, help_text="Upload kind, e.g. image or video.")
    url = models.URLField(max_length=1024, blank=True)
    credit_consumed = models.PositiveIntegerField(default=0, help_text="Credits charged for processing this upload.")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "credits_upload"
        ordering = ["-created_at"]

    def __str__(self):
        return f"Upload<{self.id}:{self.key}>"


class CreditRecharge(models.Model):
    """A purchase attempt to add credits, completed by a payment webhook."""

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="credit_recharges",
    )
    package = models.ForeignKey(
        CreditPackage,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="recharges",
    )
    amount = models.PositiveIntegerField(validators=[MinValueValidator(1)], help_text="Credits granted on completion.")
    price = models.PositiveIntegerField(help_text="Charged price in currency minor units.")
    currency = models.CharField(max_length=3, default=_default_currency)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    payment_intent_id = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        help_text="Stripe PaymentIntent id; empty until the intent is created.",
    )
    idempotency_key = models.CharField(
        max_length=255,
        help_text="Client-supplied key; repeated creation with the same key returns this recharge.",
    )
    failure_reason = models.TextField(blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "credits_recharge"
        verbose_name = "Credit recharge"
        verbose_name_plural = "Credit recharges"
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(fields=["user", "idempotency_key"], name="credit_recharge_user_idempotency"),
            models.UniqueConstraint(
                fields=["payment_intent_id"],
                condition=Q(payment_intent_id__isnull=False),
                name="credit_recharge_payment_intent",
            ),
        ]
        indexes = [
            models.Index(fields=["status", "created_at"], name="credit_recharge_status_idx"),
        ]

    def __str__(self):
        return f"CreditRecharge<{self.id}:{self.status}>"


class CreditTransaction(models.Model):
    """Immutable, append-only record of a single credit movement."""

    class TransactionType(models.TextChoices):
        RECHARGE = "recharge", "Recharge"
        CONSUMPTION = "consumption", "Consumption"
        REFUND = "refund", "Refund"
        BONUS = "bonus", "Bonus"
        SUBSCRIPTION = "subscription", "Subscription"
        EXPIRATION = "expiration", "Expiration"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="credit_transactions",
    )
    type = models.CharField(max_length=16, choices=TransactionType.choices)
    amount = models.IntegerField(help_text="Signed amount; positive adds credits, negative spends them.")
    balance_after = models.IntegerField(help_text="Balance immediately after this movement.")
    description = models.TextField(blank=True)
    related_recharge = models.ForeignKey(
        CreditRecharge,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="transactions",
    )
    related_upload = models.ForeignKey(
        Upload,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="credit_transactions",
    )
    idempotency_key = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        help_text="Deterministic key ensuring idempotent writes.",
    )
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "credits_transaction"
        verbose_name = "Credit transaction"
        verbose_name_plural = "Credit transactions"
        ordering = ["-created_at"]
        constraints = [
            models.CheckConstraint(condition=~Q(amount=0), name="credit_transaction_non_zero_amount"),
            models.CheckConstraint(condition=Q(balance_after__gte=0), name="credit_transaction_non_negative_balance"),
            models.UniqueConstraint(
                fields=["idempotency_key"],
                condition=Q(idempotency_key__isnull=False),
                name="credit_transaction_idempotency",
            ),
            models.UniqueConstraint(
                fields=["related_recharge"],
                condition=Q(type="recharge"),
                name="credit_transaction_one_per_recharge",
            ),
        ]
        indexes = [
            models.Index(fields=["user", "created_at"], name="credit_tx_user_created_idx"),
            models.Index(fields=["type"], name="credit_tx_type_idx"),
        ]

    def clean(self):
        super().clean()
        if self.amount == 0:
            raise ValidationError("Amount must be non-zero.")

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError("CreditTransaction records are immutable.")
        self.full_clean()
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("CreditTransaction records are immutable.")

    def __str__(self):
        return f"CreditTransaction<{self.type}:{self.amount} for {self.user_id}>"


class CustomerProfile(models.Model):
    """Stored link between a user and their Stripe customer."""

    class LinkSource(models.TextChoices):
        CHECKOUT = "checkout", "Checkout"
        METADATA = "metadata", "Customer metadata"
        EMAIL_MATCH = "email_match", "Email match"
        ADMIN = "admin", "Admin"

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="customer_profile",
    )
    stripe_customer_id = models.CharField(max_length=255, unique=True)
    linked_by = models.CharField(max_length=16, choices=LinkSource.choices, default=LinkSource.CHECKOUT)
    linked_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "credits_customer_profile"
        verbose_name = "Customer profile"
        verbose_name_plural = "Customer profiles"

    def __str__(self):
        return f"CustomerProfile<{self.user_id}:{self.stripe_customer_id}>"


class SubscriptionCreditTier(models.Model):
    """Explicit mapping of a subscription price to the credits it grants.

    Rows match either by ``stripe_price_id`` or, when that is blank, by
    ``unit_amount`` + ``currency`` + ``interval``.
    """

    class Interval(models.TextChoices):
        MONTH = "month", "Monthly"
        YEAR = "year", "Yearly"

    name = models.CharField(max_length=120)
    stripe_price_id = models.CharField(max_length=255, blank=True)
    unit_amount = models.PositiveIntegerField(help_text="Price in currency minor units.")
    currency = models.CharField(max_length=3, default=_default_currency)
    interval = models.CharField(max_length=8, choices=Interval.choices)
    credits = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "credits_subscription_tier"
        verbose_name = "Subscription credit tier"
        verbose_name_plural = "Subscription credit tiers"
        ordering = ["interval", "unit_amount"]
        constraints = [
            models.UniqueConstraint(
                fields=["stripe_price_id"],
                condition=~Q(stripe_price_id=""),
                name="subscription_tier_price_id",
            ),
            models.UniqueConstraint(
                fields=["unit_amount", "currency", "interval"],
                name="subscription_tier_amount",
            ),
        ]

    def __str__(self):
        return f"{self.name}: {self.credits} credits"


class StripeSubscription(models.Model):
    """Local mirror of a processor subscription. ``user`` stays empty until the customer is linked."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    stripe_subscription_id = models.CharField(max_length=255, unique=True)
    stripe_customer_id = models.CharField(max_length=255, db_index=True)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="stripe_subscriptions",
    )
    status = models.CharField(max_length=32)
    price_id = models.CharField(max_length=255, blank=True)
    product_id = models.CharField(max_length=255, blank=True)
    unit_amount = models.PositiveIntegerField(null=True, blank=True)
    currency = models.CharField(max_length=3, blank=True)
    interval = models.CharField(max_length=8, blank=True)
    current_period_end = models.DateTimeField(null=True, blank=True)
    canceled_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "credits_stripe_subscription"
        verbose_name = "Stripe subscription"
        verbose_name_plural = "Stripe subscriptions"
        ordering = ["-created_at"]

    def __str__(self):
        return f"StripeSubscription<{self.stripe_subscription_id}:{self.status}>"


class UnlinkedSubscription(models.Model):
    """Queue entry for a subscription whose owner could not be resolved."""

    subscription = models.OneToOneField(
        StripeSubscription,
        on_delete=models.CASCADE,
        related_name="unlinked_entry",
    )
    stripe_customer_id = models.CharField(max_length=255)
    customer_email = models.EmailField(blank=True)
    reason = models.CharField(max_length=255, blank=True)
    resolved_at = models.DateTimeField(null=True, blank=True)
    resolved_by = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "credits_unlinked_subscription"
        verbose_name = "Unlinked subscription"
        verbose_name_plural = "Unlinked subscriptions"
        ordering = ["created_at"]

    def __str__(self):
        return f"UnlinkedSubscription<{self.subscription_id}:{self.stripe_customer_id}>"


class WebhookEventLog(models.Model):
    """Audit trail of every webhook delivery and how it was handled."""

    class Status(models.TextChoices):
        RECEIVED = "received", "Received"
        PROCESSED = "processed", "Processed"
        IGNORED = "ignored", "Ignored"
        DUPLICATE = "duplicate", "Duplicate"
        DEAD_LETTER = "dead_letter", "Dead letter"
        FAILED = "failed", "Failed"

    id = models.BigAutoField(primary_key=True)
    event_id = models.CharField(max_length=255, db_index=True)
    event_type = models.CharField(max_length=255, blank=True)
    payload_hash = models.CharField(
        max_length=64,
        blank=True,
        help_text="SHA256 of the raw payload for drift detection.",
    )
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.RECEIVED)
    attempts = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    processed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "credits_webhook_event_log"
        verbose_name = "Webhook event log"
        verbose_name_plural = "Webhook event logs"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status"], name="credit_webhook_status_idx"),
            models.Index(fields=["event_type"], name="credit_webhook_type_idx"),
        ]

    def __str__(self):
        return f"WebhookEventLog<{self.event_id}:{self.status}>"


class WebhookFailure(models.Model):
    """Persist webhook events that could not be processed, for replay or manual review."""

    id = models.BigAutoField(primary_key=True)
    event_id = models.CharField(max_length=255, unique=True)
    event_type = models.CharField(max_length=255, blank=True)
    payload = models.JSONField(help_text="Raw event payload that failed processing.")
    failure_reason = models.TextField(help_text="Summary of why handling failed.")
    retryable = models.BooleanField(
        default=True,
        help_text="False when the failure needs manual repair before a replay can succeed.",
    )
    payment_intent_id = models.CharField(max_length=255, blank=True)
    recharge_id = models.CharField(max_length=64, blank=True)
    retry_count = models.PositiveIntegerField(default=0)
    last_attempt_at = models.DateTimeField(null=True, blank=True)
    resolved_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "credits_webhook_failure"
        verbose_name = "Webhook failure"
        verbose_name_plural = "Webhook failures"
        ordering = ["-created_at"]

    def __str__(self):
        return f"WebhookFailure<{self.event_id}:{self.failure_reason[:40]}>"
