"""
Retry policy: whether a failed attempt is retried and after how long.
"""

import random
from collections.abc import Callable
from dataclasses import dataclass, field

from jobqueue.constants import DEFAULT_BACKOFF_CAP_SECONDS, DEFAULT_JITTER
from jobqueue.types.job import Job, JobResult
from jobqueue.types.queue import QueueConfig


@dataclass
class RetryPolicy:
    """
    Exponential backoff with a cap and optional jitter.

    delay(attempt k) = backoff_base * 2 ** (k - 1), capped at max_delay,
    then scaled by a random factor in [1 - jitter, 1 + jitter] and capped
    again.
    """

    backoff_base: float = 1.0
    max_delay: float = DEFAULT_BACKOFF_CAP_SECONDS
    jitter: float = DEFAULT_JITTER
    retry_if: Callable[[Job, JobResult], bool] | None = None
    rng: random.Random = field(default_factory=random.Random, repr=False)

    @classmethod
    def from_config(
        cls,
        config: QueueConfig,
        rng: random.Random | None = None,
    ) -> "RetryPolicy":
        return cls(
            backoff_base=config.backoff_base_seconds,
            max_delay=config.backoff_max_seconds,
            jitter=config.backoff_jitter,
            rng=rng or random.Random(),
        )

    def should_retry(self, job: Job, result: JobResult) -> bool:
        """
        Decide whether a failed attempt gets another try.

        False once attempts are exhausted or the failure is marked
        non-retryable; otherwise the optional retry_if filter decides.
        """
        if job.attempts_made >= job.max_attempts:
            return False
        if not result.retryable:
            return False
        if self.retry_if is not None:
            return self.retry_if(job, result)
        return True

    def base_delay(self, attempts_made: int) -> float:
        """Deterministic backoff for the given attempt count (no jitter)."""
        if attempts_made < 1:
            return 0.0
        exponent = attempts_made - 1
        # Avoid float overflow for very large attempt counts
        if exponent > 64:
            return self.max_delay
        return min(self.max_delay, self.backoff_base * (2 ** exponent))

    def next_delay(self, job: Job) -> float:
        """Backoff in seconds before the job's next attempt."""
        delay = self.base_delay(job.attempts_made)
        if self.jitter and delay > 0:
            delay *= self.rng.uniform(1 - self.jitter, 1 + self.jitter)
        return min(self.max_delay, max(0.0, delay))
