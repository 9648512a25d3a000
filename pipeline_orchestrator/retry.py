from __future__ import annotations

import random
from typing import Optional

import structlog
from tenacity import RetryCallState, wait_exponential

from .config import RetryPolicy

logger = structlog.get_logger(__name__)


class RetryController:
    """
    Decides whether a failed attempt is resubmitted and how long to back off.

    Attempt numbers passed here are zero-based: attempt 0 is the first try, so
    a job with max_retries=2 runs at most three times.
    """

    def __init__(self, policy: Optional[RetryPolicy] = None, rng: Optional[random.Random] = None):
        self.policy = policy or RetryPolicy()
        self._wait = wait_exponential(
            multiplier=self.policy.base_delay_s,
            exp_base=self.policy.multiplier,
            max=self.policy.max_delay_s,
        )
        self._rng = rng or random.Random()

    def effective_max_retries(self, max_retries: int) -> int:
        if self.policy.retry_limit is None:
            return max_retries
        return min(max_retries, self.policy.retry_limit)

    def should_retry(self, job_id: str, attempt_number: int, max_retries: int) -> bool:
        limit = self.effective_max_retries(max_retries)
        retry = attempt_number < limit
        logger.debug("retry.decision", job_id=job_id, attempt=attempt_number, max_retries=limit, retry=retry)
        return retry

    def next_delay(self, attempt_number: int) -> float:
        """Backoff in seconds before resubmitting after failed attempt `attempt_number`."""
        state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})
        state.attempt_number = attempt_number + 1
        delay = float(self._wait(state))

        jitter = self.policy.jitter
        if jitter:
            delay *= self._rng.uniform(1 - jitter, 1 + jitter)
        return max(0.0, min(delay, self.policy.max_delay_s))
