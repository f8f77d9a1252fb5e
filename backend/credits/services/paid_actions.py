"""Credit gating for paid actions backed by the external image transformation API."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests
from django.conf import settings
from requests.exceptions import ConnectionError, HTTPError, RequestException, Timeout

from credits.services.ledger import INSUFFICIENT_CREDITS, ConsumptionResult, CreditLedger

logger = logging.getLogger(__name__)

OPERATION_FAILED = "operation_failed"


class ImageTransformError(Exception):
    """Raised when the image transformation API call does not succeed."""


class ImageTransformClient:
    """
    Client for the face-swap image API.

    Any timeout, transport error, non-2xx reply or error payload is reported
    as ``ImageTransformError``.
    """

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 timeout: Optional[float] = None, session: Optional[requests.Session] = None):
        self.base_url = (base_url or getattr(settings, "IMAGE_TRANSFORM_API_URL", "")).rstrip("/")
        self.api_key = api_key or getattr(settings, "IMAGE_TRANSFORM_API_KEY", "")
        self.timeout = timeout or getattr(settings, "IMAGE_TRANSFORM_TIMEOUT_SECONDS", 60)
        self.session = session or requests.Session()

    def swap_faces(self, *, source_url: str, target_url: str, user_id: str, **options) -> Dict[str, Any]:
        if not self.base_url:
            raise ImageTransformError("IMAGE_TRANSFORM_API_URL is not configured")
        if not source_url or not target_url:
            raise ValueError("source_url and target_url are required")

        payload = {"source": source_url, "target": target_url, "user": user_id, **options}
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = self.session.post(f"{self.base_url}/face-swap", json=payload, headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except Timeout:
            logger.error("Image transformation timed out after %s seconds for user %s", self.timeout, user_id)
            raise ImageTransformError(f"Request timed out after {self.timeout} seconds")
        except ConnectionError:
            logger.error("Could not connect to image transformation API")
            raise ImageTransformError("Failed to connect to image transformation API")
        except HTTPError:
            logger.error("Image transformation API returned HTTP %s", response.status_code)
            raise ImageTransformError(f"HTTP error {response.status_code}")
        except RequestException as exc:
            logger.error("Image transformation request failed: %s", exc)
            raise ImageTransformError(f"Request failed: {exc}")

        try:
            data = response.json()
        except ValueError:
            raise ImageTransformError("Invalid JSON response received from API")

        if not isinstance(data, dict) or data.get("error"):
            raise ImageTransformError(f"API returned error: {data.get('error') if isinstance(data, dict) else data}")
        return data


@dataclass(frozen=True)
class PaidActionResult:
    success: bool
    output: Any = None
    consumption: Optional[ConsumptionResult] = None
    reason: Optional[str] = None


def run_paid_action(
    *,
    ledger: CreditLedger,
    user_id,
    action_type: str,
    operation: Callable[[], Any],
    upload_id=None,
) -> PaidActionResult:
    """Run ``operation`` and charge for it only after it succeeds.

    A failed operation leaves the ledger untouched. If the balance was spent
    elsewhere while the operation ran, the output is withheld.
    """

    if not ledger.check_sufficient_credits(user_id, action_type):
        balance = ledger.get_balance(user_id).balance
        required = ledger.get_consumption_config(action_type).credits_required
        return PaidActionResult(
            success=False,
            reason=INSUFFICIENT_CREDITS,
            consumption=ConsumptionResult(success=False, reason=INSUFFICIENT_CREDITS, balance=balance, required=required),
        )

    try:
        output = operation()
    except ImageTransformError as exc:
        logger.warning("Paid action %s failed for user %s; no credits consumed: %s", action_type, user_id, exc)
        return PaidActionResult(success=False, reason=OPERATION_FAILED)

    consumption = ledger.consume_credits(user_id, action_type, upload_id=upload_id)
    if not consumption.success:
        logger.warning(
            "Paid action %s for user %s finished but credits were no longer sufficient.", action_type, user_id
        )
        return PaidActionResult(success=False, consumption=consumption, reason=INSUFFICIENT_CREDITS)

    return PaidActionResult(success=True, output=output, consumption=consumption)
