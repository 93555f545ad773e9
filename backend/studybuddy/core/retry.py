# backend/studybuddy/core/retry.py
"""Explicit retry policy for calls to external services."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Callable, Sequence, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

R = TypeVar("R")


@dataclass(frozen=True)
class RetryPolicy:
    """
    How many times to attempt a call and how long to wait between attempts.

    Only exceptions for which ``is_retryable`` returns True are retried; every
    other exception propagates on the first failure. Callers that retry
    money-moving requests must pair the policy with a processor idempotency key.
    """

    max_attempts: int = 3
    backoff_seconds: Sequence[float] = (0.5, 1.0, 2.0)
    retry_on: Tuple[Type[BaseException], ...] = ()
    retry_if: Callable[[BaseException], bool] | None = None
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if any(delay < 0 for delay in self.backoff_seconds):
            raise ValueError("backoff_seconds must be non-negative")

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        return cls(max_attempts=1, backoff_seconds=())

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based); the last entry repeats."""
        if not self.backoff_seconds:
            return 0.0
        index = min(attempt - 1, len(self.backoff_seconds) - 1)
        return float(self.backoff_seconds[index])

    def is_retryable(self, exc: BaseException) -> bool:
        if self.retry_on and isinstance(exc, self.retry_on):
            return True
        if self.retry_if is not None:
            return bool(self.retry_if(exc))
        return False

    def call(self, func: Callable[[], R], *, operation: str) -> R:
        """Run ``func`` under this policy and return its result."""
        attempt = 1
        while True:
            try:
                return func()
            except Exception as exc:
                if attempt >= self.max_attempts or not self.is_retryable(exc):
                    if attempt > 1:
                        logger.error(
                            "All %s attempts failed for %s: %s", attempt, operation, exc
                        )
                    raise
                wait_time = self.delay_for(attempt)
                logger.warning(
                    "Attempt %s/%s failed for %s: %s. Retrying in %ss...",
                    attempt,
                    self.max_attempts,
                    operation,
                    exc,
                    wait_time,
                )
                if wait_time:
                    self.sleep(wait_time)
                attempt += 1
