"""Custom pagination classes for credit endpoints."""
from __future__ import annotations

from rest_framework.pagination import LimitOffsetPagination

from credits.services.ledger import MAX_HISTORY_PAGE


class BoundedLimitOffsetPagination(LimitOffsetPagination):
    """LimitOffsetPagination enforcing an upper bound on the page size."""

    default_limit = 10
    max_limit = MAX_HISTORY_PAGE
