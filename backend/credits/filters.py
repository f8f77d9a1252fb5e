"""FilterSet definitions for credit endpoints."""
from __future__ import annotations

import django_filters

from credits.models import CreditRecharge, CreditTransaction


class CreditTransactionFilter(django_filters.FilterSet):
    type = django_filters.CharFilter(field_name="type", lookup_expr="iexact")
    created_after = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="gte")
    created_before = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="lte")

    class Meta:
        model = CreditTransaction
        fields = ["type"]


class CreditRechargeFilter(django_filters.FilterSet):
    status = django_filters.CharFilter(field_name="status", lookup_expr="iexact")

    class Meta:
        model = CreditRecharge
        fields = ["status"]
