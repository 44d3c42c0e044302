"""
Requeue backoff for clusters whose pass did not complete.

A cluster that keeps raising RequeueError (or fails outright) is retried
with exponential backoff and jitter, so many clusters waiting on the same
condition do not all come back at once.
"""

import random
from dataclasses import dataclass

from operator_tidb.config import Settings


@dataclass
class RetryConfig:
    """
    Backoff parameters for requeued clusters.

    Attributes:
        min_wait_seconds: Delay after the first failed pass (default 1.0)
        max_wait_seconds: Cap on the delay (default 60.0)
        exponential_base: Growth factor per consecutive failure (default 2.0)
        jitter_fraction: Fraction of the delay added as random jitter (default 0.5)

    Example:
        config = RetryConfig(min_wait_seconds=2.0)
        delay = config.delay(attempt=1)
        # 4-6 seconds (4s base + jitter)
    """

    min_wait_seconds: float = 1.0
    max_wait_seconds: float = 60.0
    exponential_base: float = 2.0
    jitter_fraction: float = 0.5

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryConfig":
        return cls(
            min_wait_seconds=settings.requeue_min_seconds,
            max_wait_seconds=settings.requeue_max_seconds,
        )

    def delay(self, attempt: int) -> float:
        """
        Seconds to wait before the next pass.

        Formula: min(max_wait, min_wait * base^attempt) + random(0, wait * jitter)

        Args:
            attempt: Consecutive failures so far, 0 for the first.
        """
        wait = min(
            self.max_wait_seconds,
            self.min_wait_seconds * (self.exponential_base**attempt),
        )
        jitter = random.uniform(0, wait * self.jitter_fraction)
        return wait + jitter
