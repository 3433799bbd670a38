"""
Step Runner

Wraps one step executor with the idempotency guard, the precondition
check, the status transitions and failure recording. A runner never
raises for executor failures: it records them on the record and returns
a ``FAILED`` outcome so the scheduling shell decides about retries.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import ValidationError

from invoicechain.chain.outcome import StepOutcome
from invoicechain.db.repository import RecordRepository
from invoicechain.executors.base import ExecutionError, StepExecutor
from invoicechain.models.record import InvoiceRecord, Step, StepStatus
from invoicechain.utils import utcnow

logger = logging.getLogger(__name__)


class StepRunner:
    """
    Runs one chain step for a record.

    Usage:
        runner = StepRunner(Step.ARCHIVAL, archival_executor, repository)
        outcome = runner.run(record_id)
    """

    def __init__(
        self,
        step: Step,
        executor: StepExecutor,
        repository: RecordRepository,
        lease_seconds: float = 600.0,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Args:
            step: Step this runner is responsible for
            executor: Executor performing the step's side effect
            repository: Record persistence
            lease_seconds: Age after which a ``processing`` claim is considered
                abandoned and may be taken over
            clock: Source of naive UTC timestamps
        """
        if executor.step != step:
            raise ValueError(f"Executor for '{executor.step.value}' cannot run step '{step.value}'")
        self.step = step
        self.executor = executor
        self.repository = repository
        self.lease_seconds = lease_seconds
        self.clock = clock

    def _lease_expired(self, claimed_at: Optional[datetime], now: datetime) -> bool:
        if claimed_at is None:
            return True
        return claimed_at <= now - timedelta(seconds=self.lease_seconds)

    def _claim(self, record: InvoiceRecord) -> Optional[StepOutcome]:
        """Move the step to processing; returns an outcome if the run must stop here"""
        now = self.clock()
        state = record.state_of(self.step)
        expected_status = state.status
        expected_claimed_at = state.claimed_at

        if expected_status == StepStatus.PROCESSING and not self._lease_expired(expected_claimed_at, now):
            return StepOutcome.not_ready(record.id, self.step, "step is in progress elsewhere")

        if expected_status == StepStatus.PROCESSING:
            logger.warning(
                f"Reclaiming abandoned step {self.step.value} of record {record.id} "
                f"(claimed at {expected_claimed_at})"
            )

        record.advance_step(self.step, StepStatus.PROCESSING, now=now)

        if self.repository.claim_step(record, self.step, expected_status, expected_claimed_at):
            return None

        current = self.repository.load(record.id)
        if current.is_completed(self.step):
            return StepOutcome.success(record.id, self.step, skipped=True)
        return StepOutcome.not_ready(record.id, self.step, "step was claimed by another invocation")

    def run(self, record_id: str) -> StepOutcome:
        """
        Run the step for ``record_id``

        Returns:
            SUCCESS (``skipped`` when the step was already completed),
            NOT_READY when an earlier step is unfinished or another
            invocation holds the step, FAILED when the executor failed

        Raises:
            RecordNotFoundError: If the record does not exist
        """
        record = self.repository.load(record_id)

        # Idempotent short-circuit
        if record.is_completed(self.step):
            logger.debug(f"Step {self.step.value} already completed for record {record_id}")
            return StepOutcome.success(record_id, self.step, skipped=True)

        if not record.is_ready(self.step):
            pending = [p.value for p in self.step.predecessors() if not record.is_completed(p)]
            logger.warning(
                f"Previous steps not complete for record {record_id}, skipping {self.step.value}: "
                f"{', '.join(pending)}"
            )
            return StepOutcome.not_ready(record_id, self.step, f"waiting for {', '.join(pending)}")

        stop = self._claim(record)
        if stop is not None:
            return stop

        claimed_at = record.state_of(self.step).claimed_at
        logger.info(
            f"Running step {self.step.value} for record {record_id} "
            f"(attempt {record.state_of(self.step).attempts})"
        )

        try:
            output = self.executor.execute(record.model_copy(deep=True))
            record.advance_step(self.step, StepStatus.COMPLETED, output=output, now=self.clock())
        except (ExecutionError, ValidationError) as e:
            return self._record_failure(record, e, claimed_at)
        except Exception as e:
            logger.exception(f"Unexpected error in step {self.step.value} for record {record_id}")
            return self._record_failure(record, e, claimed_at)

        if not self.repository.finish_step(record, self.step, claimed_at):
            return self._taken_over(record_id)
        logger.info(f"Step {self.step.value} completed for record {record_id}")
        if record.all_steps_completed():
            logger.info(f"Invoice record {record_id} fully processed")
        return StepOutcome.success(record_id, self.step)

    def _taken_over(self, record_id: str) -> StepOutcome:
        """Outcome for a run whose claim expired and was taken over mid-execution"""
        current = self.repository.load(record_id)
        if current.is_completed(self.step):
            return StepOutcome.success(record_id, self.step, skipped=True)
        return StepOutcome.not_ready(record_id, self.step, "step was taken over by another invocation")

    def _record_failure(self, record: InvoiceRecord, error: Exception, claimed_at: datetime) -> StepOutcome:
        retryable = getattr(error, 'retryable', not isinstance(error, ValidationError))
        message = str(error) or error.__class__.__name__

        record.advance_step(self.step, StepStatus.FAILED, error=message, now=self.clock())
        if not self.repository.finish_step(record, self.step, claimed_at):
            return self._taken_over(record.id)

        logger.error(
            f"Step {self.step.value} failed for record {record.id} "
            f"({'retryable' if retryable else 'permanent'}): {message}"
        )
        return StepOutcome.failed(record.id, self.step, message, retryable=retryable)
