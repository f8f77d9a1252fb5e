"""HTTP views for the credits API."""

from .admin import CreditRepairView, UnlinkedSubscriptionView
from .balance import CreditBalanceView, CreditCheckView, CreditConsumeView, CreditTransactionListView
from .recharges import CreditPackageListView, CreditRechargeListCreateView
from .webhooks import StripeWebhookView
