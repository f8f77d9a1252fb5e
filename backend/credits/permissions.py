"""Permission classes for the credit admin endpoints."""
from __future__ import annotations

import hmac
import logging

from django.conf import settings
from rest_framework.permissions import BasePermission

logger = logging.getLogger(__name__)


class HasCreditsAdminKey(BasePermission):
    """Allow requests bearing ``Authorization: Bearer <CREDITS_ADMIN_API_KEY>``.

    Denies everything while the key is unset.
    """

    message = "Admin API key required."

    def has_permission(self, request, view) -> bool:
        expected = getattr(settings, "CREDITS_ADMIN_API_KEY", "")
        if not expected:
            logger.error("CREDITS_ADMIN_API_KEY is not configured; rejecting admin request.")
            return False

        header = request.META.get("HTTP_AUTHORIZATION", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token:
            return False
        return hmac.compare_digest(token.strip().encode("utf-8"), expected.encode("utf-8"))
