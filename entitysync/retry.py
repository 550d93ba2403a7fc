"""Transient store error classification and re-issue backoff.

Provides:
- is_transient_error: the timeout class the scan engine recovers from locally
- RetryPolicy: max consecutive re-issues, delays, jitter, and predicate
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Callable, Optional

from entitysync.exceptions import StoreTimeoutError

Predicate = Callable[[BaseException], bool]

TRANSIENT_MARKERS = ("timeout", "timed out", "deadline exceeded")


def is_transient_error(exc: BaseException) -> bool:
    """True for store operation timeouts, by type or by message."""
    if isinstance(exc, (StoreTimeoutError, TimeoutError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


@dataclass
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 0.1
    max_delay: float = 5.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.2  # fraction of delay as jitter (0.0-1.0)
    retry_if: Optional[Predicate] = None  # custom predicate

    def should_retry(self, exc: BaseException) -> bool:
        if self.retry_if is not None:
            try:
                return bool(self.retry_if(exc))
            except Exception:
                return False
        return is_transient_error(exc)

    def compute_delay(self, attempt: int) -> float:
        delay = min(
            self.max_delay, self.base_delay * (self.backoff_multiplier ** (attempt - 1))
        )
        if self.jitter > 0:
            span = delay * self.jitter
            delay = max(0.0, random.uniform(delay - span, delay + span))
        return delay

    @classmethod
    def immediate(cls, max_attempts: int = 5) -> "RetryPolicy":
        """Policy without sleeping between re-issues."""
        return cls(max_attempts=max_attempts, base_delay=0.0, max_delay=0.0, jitter=0.0)
