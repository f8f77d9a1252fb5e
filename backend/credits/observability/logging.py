"""Structured logging helper for credit ledger events."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger("credits")


def log_credit_event(*, message: str, user_id: Optional[Any] = None, event_id: Optional[str] = None,
                     actor: Optional[str] = None, extra: Optional[Dict[str, Any]] = None,
                     level: int = logging.INFO) -> None:
    payload: Dict[str, Any] = {"message": message}
    if user_id is not None:
        payload["user_id"] = str(user_id)
    if event_id:
        payload["event_id"] = event_id
    if actor:
        payload["actor"] = actor
    if extra:
        payload.update(extra)
    logger.log(level, payload)
