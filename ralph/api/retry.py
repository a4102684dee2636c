"""Bounded retry with exponential backoff for agent calls."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from ralph.config.models import RetryConfig
from ralph.core.errors import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryState:
    """State of a retry operation."""

    attempt: int
    max_attempts: int
    last_error: Optional[ProviderError]
    delay: float
    total_delay: float


class RetryHandler:
    """Retries retryable ``ProviderError``s up to ``max_attempts`` calls.

    Anything else, including non-retryable provider errors, propagates on
    the first failure.
    """

    def __init__(
        self,
        config: RetryConfig,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self._sleep = sleep

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay with exponential backoff and optional jitter.

        Args:
            attempt: Attempt number that just failed (1-indexed)

        Returns:
            Delay in seconds
        """
        delay = min(self.config.base_delay * (2 ** (attempt - 1)), self.config.max_delay)
        if self.config.jitter:
            delay *= random.uniform(0.9, 1.1)
        return delay

    def should_retry(self, error: Exception, attempt: int) -> bool:
        if attempt >= self.config.max_attempts:
            return False
        return isinstance(error, ProviderError) and error.retryable

    def execute(
        self,
        func: Callable[[], T],
        on_retry: Optional[Callable[[RetryState], None]] = None,
    ) -> tuple[T, int]:
        """Call ``func`` until it succeeds or retries are exhausted.

        Returns:
            ``(result, attempts)`` where ``attempts`` counts every call made.

        Raises:
            The last exception if all attempts fail or it is not retryable.
        """
        attempt = 0
        total_delay = 0.0

        while True:
            attempt += 1
            try:
                return func(), attempt
            except ProviderError as e:
                if not self.should_retry(e, attempt):
                    raise

                delay = self.calculate_delay(attempt)
                total_delay += delay
                logger.warning(
                    "Agent call failed (%s, attempt %d/%d), retrying in %.1fs: %s",
                    e.code,
                    attempt,
                    self.config.max_attempts,
                    delay,
                    e,
                )
                if on_retry:
                    on_retry(
                        RetryState(
                            attempt=attempt,
                            max_attempts=self.config.max_attempts,
                            last_error=e,
                            delay=delay,
                            total_delay=total_delay,
                        )
                    )
                self._sleep(delay)
