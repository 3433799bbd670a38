"""
Chain Orchestrator

Sequences the extraction -> archival -> ledger step runners. After a
runner reports a fresh success the orchestrator hands the next step to a
dispatcher; whether that step runs inline or as a queued job is the
dispatcher's business.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable, Dict, Iterable, Optional

from invoicechain.chain.outcome import StepOutcome
from invoicechain.chain.retry import RetryPolicy, run_with_retries
from invoicechain.chain.runner import StepRunner
from invoicechain.db.repository import RecordRepository
from invoicechain.models.record import InvoiceRecord, Step

if TYPE_CHECKING:
    from invoicechain.jobs.queue import JobQueue

logger = logging.getLogger(__name__)


class Dispatcher(ABC):
    """Strategy for scheduling a step as a new unit of work"""

    @abstractmethod
    def dispatch(self, orchestrator: 'ChainOrchestrator', record_id: str, step: Step) -> None:
        pass


class InlineDispatcher(Dispatcher):
    """Runs the dispatched step immediately in the calling thread"""

    def __init__(self, policy: Optional[RetryPolicy] = None, sleep: Callable[[float], None] = time.sleep):
        self.policy = policy or RetryPolicy(max_attempts=1, delay_seconds=0)
        self.sleep = sleep

    def dispatch(self, orchestrator: 'ChainOrchestrator', record_id: str, step: Step) -> None:
        run_with_retries(
            lambda: orchestrator.run_step(record_id, step),
            self.policy,
            self.sleep
        )


class QueueDispatcher(Dispatcher):
    """Enqueues the dispatched step for the worker"""

    def __init__(self, queue: 'JobQueue', delay_seconds: float = 0.0):
        self.queue = queue
        self.delay_seconds = delay_seconds

    def dispatch(self, orchestrator: 'ChainOrchestrator', record_id: str, step: Step) -> None:
        self.queue.enqueue(record_id, step, delay_seconds=self.delay_seconds)


class ChainOrchestrator:
    """
    Drives a record through the step chain.

    Usage:
        orchestrator = ChainOrchestrator(runners, repository, QueueDispatcher(queue))
        orchestrator.submit(record.id)

        # later, from the worker
        outcome = orchestrator.run_step(record.id, Step.EXTRACTION)
    """

    def __init__(
        self,
        runners: Iterable[StepRunner],
        repository: RecordRepository,
        dispatcher: Dispatcher
    ):
        self.runners: Dict[Step, StepRunner] = {runner.step: runner for runner in runners}
        missing = [step.value for step in Step.ordered() if step not in self.runners]
        if missing:
            raise ValueError(f"No runner registered for step(s): {', '.join(missing)}")
        self.repository = repository
        self.dispatcher = dispatcher

    def submit(self, record_id: str) -> None:
        """Start the chain for a freshly created record"""
        # Fail fast on unknown ids rather than queueing work that can never run
        self.repository.load(record_id)
        logger.info(f"Submitting invoice record {record_id}")
        self.dispatcher.dispatch(self, record_id, Step.ordered()[0])

    def run_step(self, record_id: str, step: Step) -> StepOutcome:
        """
        Run one step and dispatch the next one after a success

        A skipped success (step was already completed) dispatches the next
        step again unless that one is completed too. An earlier invocation
        may have completed the step and then failed to dispatch.
        """
        outcome = self.runners[step].run(record_id)

        if outcome.is_success:
            next_step = step.next()
            if next_step is not None and self._needs_dispatch(record_id, next_step, outcome):
                logger.debug(f"Dispatching {next_step.value} for record {record_id}")
                self.dispatcher.dispatch(self, record_id, next_step)

        return outcome

    def _needs_dispatch(self, record_id: str, next_step: Step, outcome: StepOutcome) -> bool:
        if not outcome.skipped:
            return True
        return not self.repository.load(record_id).is_completed(next_step)

    def resume(self, record_id: str) -> Optional[Step]:
        """
        Re-dispatch the first unfinished step of a record

        Used by operators after retries were exhausted.

        Returns:
            The step dispatched, or None if the record is completed
        """
        record = self.repository.load(record_id)
        step = record.next_incomplete_step()
        if step is None:
            logger.info(f"Invoice record {record_id} is already completed")
            return None
        logger.info(f"Resuming invoice record {record_id} at step {step.value}")
        self.dispatcher.dispatch(self, record_id, step)
        return step

    def status(self, record_id: str) -> InvoiceRecord:
        return self.repository.load(record_id)
