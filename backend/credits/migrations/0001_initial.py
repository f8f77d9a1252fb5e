import uuid

import django.core.validators
import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models

import credits.models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="CreditPackage",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("slug", models.SlugField(max_length=64, unique=True)),
                ("name", models.CharField(max_length=120)),
                ("credits", models.PositiveIntegerField(help_text="Credits granted on purchase.", validators=[django.core.validators.MinValueValidator(1)])),
                ("price", models.PositiveIntegerField(help_text="Price in currency minor units (e.g. cents).")),
                ("currency", models.CharField(default=credits.models._default_currency, max_length=3)),
                ("is_active", models.BooleanField(default=True)),
                ("sort_order", models.IntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "credits_package",
                "ordering": ["sort_order", "price"],
                "verbose_name": "Credit package",
                "verbose_name_plural": "Credit packages",
            },
        ),
        migrations.CreateModel(
            name="CreditConsumptionConfig",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("action_type", models.CharField(max_length=64, unique=True)),
                ("credits_required", models.PositiveIntegerField(validators=[django.core.validators.MinValueValidator(1)])),
                ("description", models.CharField(blank=True, max_length=255)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "credits_consumption_config",
                "ordering": ["action_type"],
                "verbose_name": "Credit consumption config",
                "verbose_name_plural": "Credit consumption configs",
                "constraints": [
                    models.CheckConstraint(condition=models.Q(credits_required__gte=1), name="credit_consumption_positive_cost"),
                ],
            },
        ),
        migrations.CreateModel(
            name="CreditBalance",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("balance", models.IntegerField(default=0, help_text="Spendable credits.")),
                ("total_recharged", models.IntegerField(default=0, help_text="Lifetime credits added.")),
                ("total_consumed", models.IntegerField(default=0, help_text="Lifetime credits spent.")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("user", models.OneToOneField(help_text="User owning this balance.", on_delete=django.db.models.deletion.CASCADE, related_name="credit_balance", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "db_table": "credits_balance",
                "ordering": ["user_id"],
                "verbose_name": "Credit balance",
                "verbose_name_plural": "Credit balances",
                "constraints": [
                    models.CheckConstraint(condition=models.Q(balance__gte=0), name="credit_balance_non_negative"),
                    models.CheckConstraint(
                        condition=models.Q(balance=models.F("total_recharged") - models.F("total_consumed")),
                        name="credit_balance_matches_totals",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Upload",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("key", models.CharField(help_text="Storage key of the uploaded file.", max_length=512)),
                ("kind", models.CharField(blank=True, help_text="Upload kind, e.g. image or video.", max_length=32)),
                ("url", models.URLField(blank=True, max_length=1024)),
                ("credit_consumed", models.PositiveIntegerField(default=0, help_text="Credits charged for processing this upload.")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="uploads", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "db_table": "credits_upload",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="CreditRecharge",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("amount", models.PositiveIntegerField(help_text="Credits granted on completion.", validators=[django.core.validators.MinValueValidator(1)])),
                ("price", models.PositiveIntegerField(help_text="Charged price in currency minor units.")),
                ("currency", models.CharField(default=credits.models._default_currency, max_length=3)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("completed", "Completed"), ("failed", "Failed")], default="pending", max_length=16)),
                ("payment_intent_id", models.CharField(blank=True, help_text="Stripe PaymentIntent id; empty until the intent is created.", max_length=255, null=True)),
                ("idempotency_key", models.CharField(help_text="Client-supplied key; repeated creation with the same key returns this recharge.", max_length=255)),
                ("failure_reason", models.TextField(blank=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("package", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name="recharges", to="credits.creditpackage")),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="credit_recharges", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "db_table": "credits_recharge",
                "ordering": ["-created_at"],
                "verbose_name": "Credit recharge",
                "verbose_name_plural": "Credit recharges",
                "constraints": [
                    models.UniqueConstraint(fields=["user", "idempotency_key"], name="credit_recharge_user_idempotency"),
                    models.UniqueConstraint(condition=models.Q(payment_intent_id__isnull=False), fields=["payment_intent_id"], name="credit_recharge_payment_intent"),
                ],
                "indexes": [
                    models.Index(fields=["status", "created_at"], name="credit_recharge_status_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="CreditTransaction",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("type", models.CharField(choices=[("recharge", "Recharge"), ("consumption", "Consumption"), ("refund", "Refund"), ("bonus", "Bonus"), ("subscription", "Subscription"), ("expiration", "Expiration")], max_length=16)),
                ("amount", models.IntegerField(help_text="Signed amount; positive adds credits, negative spends them.")),
                ("balance_after", models.IntegerField(help_text="Balance immediately after this movement.")),
                ("description", models.TextField(blank=True)),
                ("idempotency_key", models.CharField(blank=True, help_text="Deterministic key ensuring idempotent writes.", max_length=255, null=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("related_recharge", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name="transactions", to="credits.creditrecharge")),
                ("related_upload", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="credit_transactions", to="credits.upload")),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="credit_transactions", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "db_table": "credits_transaction",
                "ordering": ["-created_at"],
                "verbose_name": "Credit transaction",
                "verbose_name_plural": "Credit transactions",
                "constraints": [
                    models.CheckConstraint(condition=~models.Q(amount=0), name="credit_transaction_non_zero_amount"),
                    models.CheckConstraint(condition=models.Q(balance_after__gte=0), name="credit_transaction_non_negative_balance"),
                    models.UniqueConstraint(condition=models.Q(idempotency_key__isnull=False), fields=["idempotency_key"], name="credit_transaction_idempotency"),
                    models.UniqueConstraint(condition=models.Q(type="recharge"), fields=["related_recharge"], name="credit_transaction_one_per_recharge"),
                ],
                "indexes": [
                    models.Index(fields=["user", "created_at"], name="credit_tx_user_created_idx"),
                    models.Index(fields=["type"], name="credit_tx_type_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="CustomerProfile",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("stripe_customer_id", models.CharField(max_length=255, unique=True)),
                ("linked_by", models.CharField(choices=[("checkout", "Checkout"), ("metadata", "Customer metadata"), ("email_match", "Email match"), ("admin", "Admin")], default="checkout", max_length=16)),
                ("linked_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("user", models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name="customer_profile", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "db_table": "credits_customer_profile",
                "verbose_name": "Customer profile",
                "verbose_name_plural": "Customer profiles",
            },
        ),
        migrations.CreateModel(
            name="SubscriptionCreditTier",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=120)),
                ("stripe_price_id", models.CharField(blank=True, max_length=255)),
                ("unit_amount", models.PositiveIntegerField(help_text="Price in currency minor units.")),
                ("currency", models.CharField(default=credits.models._default_currency, max_length=3)),
                ("interval", models.CharField(choices=[("month", "Monthly"), ("year", "Yearly")], max_length=8)),
                ("credits", models.PositiveIntegerField(validators=[django.core.validators.MinValueValidator(1)])),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "db_table": "credits_subscription_tier",
                "ordering": ["interval", "unit_amount"],
                "verbose_name": "Subscription credit tier",
                "verbose_name_plural": "Subscription credit tiers",
                "constraints": [
                    models.UniqueConstraint(condition=~models.Q(stripe_price_id=""), fields=["stripe_price_id"], name="subscription_tier_price_id"),
                    models.UniqueConstraint(fields=["unit_amount", "currency", "interval"], name="subscription_tier_amount"),
                ],
            },
        ),
        migrations.CreateModel(
            name="StripeSubscription",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("stripe_subscription_id", models.CharField(max_length=255, unique=True)),
                ("stripe_customer_id", models.CharField(db_index=True, max_length=255)),
                ("status", models.CharField(max_length=32)),
                ("price_id", models.CharField(blank=True, max_length=255)),
                ("product_id", models.CharField(blank=True, max_length=255)),
                ("unit_amount", models.PositiveIntegerField(blank=True, null=True)),
                ("currency", models.CharField(blank=True, max_length=3)),
                ("interval", models.CharField(blank=True, max_length=8)),
                ("current_period_end", models.DateTimeField(blank=True, null=True)),
                ("canceled_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("user", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="stripe_subscriptions", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "db_table": "credits_stripe_subscription",
                "ordering": ["-created_at"],
                "verbose_name": "Stripe subscription",
                "verbose_name_plural": "Stripe subscriptions",
            },
        ),
        migrations.CreateModel(
            name="UnlinkedSubscription",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("stripe_customer_id", models.CharField(max_length=255)),
                ("customer_email", models.EmailField(blank=True, max_length=254)),
                ("reason", models.CharField(blank=True, max_length=255)),
                ("resolved_at", models.DateTimeField(blank=True, null=True)),
                ("resolved_by", models.CharField(blank=True, max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("subscription", models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name="unlinked_entry", to="credits.stripesubscription")),
            ],
            options={
                "db_table": "credits_unlinked_subscription",
                "ordering": ["created_at"],
                "verbose_name": "Unlinked subscription",
                "verbose_name_plural": "Unlinked subscriptions",
            },
        ),
        migrations.CreateModel(
            name="WebhookEventLog",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("event_id", models.CharField(db_index=True, max_length=255)),
                ("event_type", models.CharField(blank=True, max_length=255)),
                ("payload_hash", models.CharField(blank=True, help_text="SHA256 of the raw payload for drift detection.", max_length=64)),
                ("status", models.CharField(choices=[("received", "Received"), ("processed", "Processed"), ("ignored", "Ignored"), ("duplicate", "Duplicate"), ("dead_letter", "Dead letter"), ("failed", "Failed")], default="received", max_length=20)),
                ("attempts", models.PositiveIntegerField(default=0)),
                ("last_error", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "db_table": "credits_webhook_event_log",
                "ordering": ["-created_at"],
                "verbose_name": "Webhook event log",
                "verbose_name_plural": "Webhook event logs",
                "indexes": [
                    models.Index(fields=["status"], name="credit_webhook_status_idx"),
                    models.Index(fields=["event_type"], name="credit_webhook_type_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="WebhookFailure",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("event_id", models.CharField(max_length=255, unique=True)),
                ("event_type", models.CharField(blank=True, max_length=255)),
                ("payload", models.JSONField(help_text="Raw event payload that failed processing.")),
                ("failure_reason", models.TextField(help_text="Summary of why handling failed.")),
                ("retryable", models.BooleanField(default=True, help_text="False when the failure needs manual repair before a replay can succeed.")),
                ("payment_intent_id", models.CharField(blank=True, max_length=255)),
                ("recharge_id", models.CharField(blank=True, max_length=64)),
                ("retry_count", models.PositiveIntegerField(default=0)),
                ("last_attempt_at", models.DateTimeField(blank=True, null=True)),
                ("resolved_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "db_table": "credits_webhook_failure",
                "ordering": ["-created_at"],
                "verbose_name": "Webhook failure",
                "verbose_name_plural": "Webhook failures",
            },
        ),
    ]
