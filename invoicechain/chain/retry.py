"""
Retry Policy

Bounded attempts with a fixed delay, applied the same way to every step.
Used by the queue worker to reschedule failed jobs and by the inline
dispatcher to retry within the calling thread.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from invoicechain.chain.outcome import StepOutcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration"""
    max_attempts: int = 3
    delay_seconds: float = 5.0

    @classmethod
    def from_config(cls, retry_config: Optional[Dict[str, Any]]) -> 'RetryPolicy':
        retry_config = retry_config or {}
        return cls(
            max_attempts=int(retry_config.get('max_attempts', cls.max_attempts)),
            delay_seconds=float(retry_config.get('delay_seconds', cls.delay_seconds))
        )

    def should_retry(self, outcome: StepOutcome, attempt: int) -> bool:
        """
        Decide whether a failed invocation gets another attempt

        Args:
            outcome: Outcome of the invocation that just finished
            attempt: 1-based number of that invocation
        """
        return outcome.is_failure and outcome.retryable and attempt < self.max_attempts

    def next_run_at(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.delay_seconds)


def run_with_retries(
    run: Callable[[], StepOutcome],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep
) -> StepOutcome:
    """
    Call ``run`` until it stops failing or the policy gives up

    Returns:
        The last outcome
    """
    attempt = 1
    outcome = run()
    while policy.should_retry(outcome, attempt):
        logger.info(
            f"Retrying step {outcome.step.value} for record {outcome.record_id} "
            f"({attempt + 1}/{policy.max_attempts}) in {policy.delay_seconds}s"
        )
        sleep(policy.delay_seconds)
        attempt += 1
        outcome = run()

    if outcome.is_failure:
        logger.warning(
            f"Giving up on step {outcome.step.value} for record {outcome.record_id} "
            f"after {attempt} attempt(s): {outcome.reason}"
        )
    return outcome
