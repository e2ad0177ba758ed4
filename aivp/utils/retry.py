"""
Retry configuration with exponential backoff.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from aivp.exceptions import AIVPError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Retry configuration for store-backed operations."""

    max_attempts: int = 3
    initial_delay: float = 0.1
    max_delay: float = 2.0
    backoff_multiplier: float = 2.0
    jitter: bool = True

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = min(self.initial_delay * (self.backoff_multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter and delay > 0:
            delay = random.uniform(delay / 2, delay)
        return delay


def is_retryable(error: BaseException) -> bool:
    return isinstance(error, AIVPError) and error.retryable


def call_with_retry(
    operation: Callable[[], T],
    retry_config: RetryConfig,
    operation_name: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds or a non-retryable error occurs.

    Only errors flagged ``retryable`` are retried; the last one is re-raised
    once attempts are exhausted.
    """
    attempt = 1
    while True:
        try:
            return operation()
        except AIVPError as e:
            if not e.retryable or attempt >= retry_config.max_attempts:
                raise
            delay = retry_config.delay_for(attempt)
            logger.warning(
                f"{operation_name} failed with {e.error_code} "
                f"(attempt {attempt}/{retry_config.max_attempts}), retrying in {delay:.2f}s"
            )
            sleep(delay)
            attempt += 1
