"""Bounded retry with exponential backoff for in-request work."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Tuple, Type

from celery.utils.time import get_exponential_backoff_interval

logger = logging.getLogger(__name__)


class RetryExhausted(Exception):
    """Raised when every attempt allowed by a ``RetryPolicy`` has failed."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


@dataclass
class RetryPolicy:
    """Retry ``func`` up to ``max_attempts`` times, sleeping ``base_delay * 2**n`` between tries.

    Exceptions listed in ``giveup`` are re-raised immediately. ``sleep`` is
    injectable so tests do not wait.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    giveup: Tuple[Type[BaseException], ...] = ()
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1-based)."""

        return get_exponential_backoff_interval(
            factor=self.base_delay,
            retries=retry_number - 1,
            maximum=self.max_delay,
            full_jitter=False,
        )

    def call(
        self,
        func: Callable[..., Any],
        *args,
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
        **kwargs,
    ) -> Tuple[Any, int]:
        """Run ``func`` and return ``(result, attempts_used)``."""

        attempt = 0
        while True:
            attempt += 1
            try:
                return func(*args, **kwargs), attempt
            except self.giveup:
                raise
            except Exception as exc:
                if attempt >= self.max_attempts:
                    raise RetryExhausted(attempt, exc) from exc
                delay = self.delay_for(attempt)
                logger.warning("Attempt %s/%s failed (%s); retrying in %ss.", attempt, self.max_attempts, exc, delay)
                if on_retry is not None:
                    on_retry(attempt, exc, delay)
                self.sleep(delay)
