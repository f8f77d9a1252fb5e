from django.urls import path

from credits.views import (
    CreditBalanceView,
    CreditCheckView,
    CreditConsumeView,
    CreditPackageListView,
    CreditRechargeListCreateView,
    CreditRepairView,
    CreditTransactionListView,
    StripeWebhookView,
    UnlinkedSubscriptionView,
)

app_name = "credits"

urlpatterns = [
    path("webhooks/stripe/", StripeWebhookView.as_view(), name="stripe-webhook"),
    path("balance/", CreditBalanceView.as_view(), name="balance"),
    path("transactions/", CreditTransactionListView.as_view(), name="transactions"),
    path("check/", CreditCheckView.as_view(), name="check"),
    path("consume/", CreditConsumeView.as_view(), name="consume"),
    path("packages/", CreditPackageListView.as_view(), name="packages"),
    path("recharges/", CreditRechargeListCreateView.as_view(), name="recharges"),
    path("admin/repair/", CreditRepairView.as_view(), name="admin-repair"),
    path("admin/subscriptions/unlinked/", UnlinkedSubscriptionView.as_view(), name="admin-unlinked-subscriptions"),
]
