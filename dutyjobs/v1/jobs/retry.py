"""
Retry and dead-letter policy for failed job runs.
"""

import random
from dataclasses import dataclass
from datetime import datetime, timedelta

from dutyjobs.config.settings import Settings


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a failed run: requeue after ``delay_s`` or dead-letter."""

    retry: bool
    retry_count: int
    delay_s: float = 0.0

    def run_at(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.delay_s)


class RetryPolicy:
    """
    Exponential backoff with jitter, capped.

    A failure increments the retry count. The job is requeued while the new
    count is below ``max_retries`` and dead-lettered once it reaches it, so
    the count never exceeds ``max_retries``.
    """

    def __init__(
        self,
        base_delay_s: float,
        max_delay_s: float,
        jitter: float = 0.0,
        rng: random.Random | None = None,
    ):
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s
        self.jitter = jitter
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            base_delay_s=settings.job_backoff_base_ms / 1000,
            max_delay_s=settings.job_max_backoff_s,
            jitter=settings.job_backoff_jitter,
        )

    def backoff(self, retry_count: int) -> float:
        """Delay before the run following failure number ``retry_count``."""
        # Exponential backoff: base * 2^retry_count
        delay = min(self.max_delay_s, self.base_delay_s * (2**retry_count))

        if self.jitter:
            delay += delay * self.jitter * (2 * self._rng.random() - 1)

        return max(0.0, delay)

    def decide(self, retry_count: int, max_retries: int) -> RetryDecision:
        """Decide what happens to a job whose run just failed."""
        attempts = retry_count + 1

        if attempts < max_retries:
            return RetryDecision(
                retry=True, retry_count=attempts, delay_s=self.backoff(attempts)
            )

        return RetryDecision(retry=False, retry_count=min(attempts, max_retries))
