"""
Async Job Worker

Polls the step job queue and runs each job through the chain orchestrator.
Supports:
- Concurrency control
- Fixed-delay retries bounded by the retry policy
- Dead letter handling
- Requeueing of jobs abandoned by a dead worker
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Optional, Set

from invoicechain.chain.outcome import StepOutcome
from invoicechain.chain.retry import RetryPolicy
from invoicechain.config.chain_config import ChainConfig
from invoicechain.db.models import StepJob
from invoicechain.db.repository import RecordNotFoundError
from invoicechain.jobs.queue import JobQueue
from invoicechain.models.record import Step
from invoicechain.utils import utcnow

if TYPE_CHECKING:
    from invoicechain.chain.orchestrator import ChainOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    """Worker configuration"""
    # Polling
    poll_interval: float = 1.0  # seconds
    batch_size: int = 10

    # Concurrency
    max_concurrent: int = 5

    # Jobs processing longer than this are assumed abandoned
    stale_job_timeout: float = 600.0  # seconds

    # Graceful shutdown
    shutdown_timeout: float = 30.0

    @classmethod
    def from_config(cls, config: ChainConfig) -> 'WorkerConfig':
        worker_config = config.get('worker', {}) or {}
        return cls(
            poll_interval=float(worker_config.get('poll_interval', cls.poll_interval)),
            batch_size=int(worker_config.get('batch_size', cls.batch_size)),
            max_concurrent=int(worker_config.get('max_concurrent', cls.max_concurrent)),
            stale_job_timeout=float(worker_config.get('stale_job_timeout', cls.stale_job_timeout)),
            shutdown_timeout=float(worker_config.get('shutdown_timeout', cls.shutdown_timeout))
        )


class Worker:
    """
    Async worker for step jobs.

    Step runners are synchronous; each job runs in a worker thread so the
    event loop keeps polling while executors wait on the network.

    Usage:
        worker = Worker(queue, orchestrator, WorkerConfig(), RetryPolicy())
        await worker.run()
    """

    def __init__(
        self,
        queue: JobQueue,
        orchestrator: 'ChainOrchestrator',
        config: Optional[WorkerConfig] = None,
        policy: Optional[RetryPolicy] = None
    ):
        self.queue = queue
        self.orchestrator = orchestrator
        self.config = config or WorkerConfig()
        self.policy = policy or RetryPolicy()

        # State
        self._running = False
        self._shutdown_event: Optional[asyncio.Event] = None
        self._active_jobs: Set[str] = set()
        self._semaphore: Optional[asyncio.Semaphore] = None

        # Metrics
        self._processed_count = 0
        self._failed_count = 0
        self._retried_count = 0
        self._start_time: Optional[datetime] = None

    async def run(self) -> None:
        """
        Run the worker.

        Polls for due jobs and executes them until shutdown.
        """
        logger.info("Starting worker...")

        self._running = True
        self._start_time = utcnow()
        self._shutdown_event = asyncio.Event()

        # Set up signal handlers for graceful shutdown
        self._setup_signal_handlers()

        try:
            while self._running and not self._shutdown_event.is_set():
                try:
                    await self.run_once()

                    # Wait before next poll
                    try:
                        await asyncio.wait_for(
                            self._shutdown_event.wait(),
                            timeout=self.config.poll_interval
                        )
                    except asyncio.TimeoutError:
                        pass

                except Exception as e:
                    logger.exception(f"Worker loop error: {e}")
                    await asyncio.sleep(self.config.poll_interval)

        finally:
            # Wait for active jobs to complete
            if self._active_jobs:
                logger.info(f"Waiting for {len(self._active_jobs)} active jobs to complete...")
                try:
                    await asyncio.wait_for(
                        self._wait_for_active_jobs(),
                        timeout=self.config.shutdown_timeout
                    )
                except asyncio.TimeoutError:
                    logger.warning("Shutdown timeout - some jobs may not have completed")

            self._running = False
            logger.info(
                f"Worker stopped. Processed: {self._processed_count}, Failed: {self._failed_count}"
            )

    async def run_once(self) -> int:
        """
        Claim one batch of due jobs and process it.

        Returns:
            Number of jobs processed
        """
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.config.max_concurrent)

        self.queue.requeue_stale(self.config.stale_job_timeout)
        jobs = self.queue.claim_due(limit=self.config.batch_size)

        if jobs:
            await asyncio.gather(*[self._process_job(job) for job in jobs], return_exceptions=True)
        return len(jobs)

    async def drain(self, max_rounds: int = 100) -> int:
        """
        Process jobs until no job is due.

        Returns:
            Number of jobs processed
        """
        total = 0
        for _ in range(max_rounds):
            processed = await self.run_once()
            if not processed:
                break
            total += processed
        return total

    async def stop(self) -> None:
        """Stop the worker gracefully"""
        logger.info("Stopping worker...")
        self._running = False
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def _process_job(self, job: StepJob) -> None:
        """Process a single job"""
        async with self._semaphore:
            self._active_jobs.add(job.id)

            try:
                try:
                    step = Step(job.step)
                except ValueError:
                    self._mark_dead(job, f"Unknown step: {job.step}")
                    return

                try:
                    outcome = await asyncio.to_thread(self.orchestrator.run_step, job.record_id, step)
                except RecordNotFoundError as e:
                    self._mark_dead(job, str(e))
                    return
                except Exception as e:
                    logger.exception(f"Job {job.id} raised")
                    outcome = StepOutcome.failed(job.record_id, step, str(e) or e.__class__.__name__)

                self._handle_outcome(job, outcome)

            finally:
                self._active_jobs.discard(job.id)

    def _handle_outcome(self, job: StepJob, outcome: StepOutcome) -> None:
        if not outcome.is_failure:
            self.queue.mark_completed(job.id, outcome.kind.value)
            self._processed_count += 1
            return

        if self.policy.should_retry(outcome, job.attempts):
            run_after = self.policy.next_run_at(utcnow())
            self.queue.schedule_retry(job.id, outcome.reason, run_after)
            self._retried_count += 1
            logger.info(
                f"Job {job.id} scheduled for retry "
                f"({job.attempts + 1}/{self.policy.max_attempts}) in {self.policy.delay_seconds}s"
            )
            return

        if outcome.retryable:
            error = f"Max retries exceeded. Last error: {outcome.reason}"
        else:
            error = f"Permanent failure: {outcome.reason}"
        self._mark_dead(job, error)

    def _mark_dead(self, job: StepJob, error: str) -> None:
        self.queue.mark_dead(job.id, error)
        self._failed_count += 1

    async def _wait_for_active_jobs(self) -> None:
        """Wait for all active jobs to complete"""
        while self._active_jobs:
            await asyncio.sleep(0.5)

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown"""
        try:
            loop = asyncio.get_running_loop()

            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(
                    sig,
                    lambda: asyncio.create_task(self.stop())
                )
        except (NotImplementedError, RuntimeError):
            # Signal handling not available (e.g., Windows)
            pass

    def get_stats(self) -> Dict[str, Any]:
        """Get worker statistics"""
        uptime = None
        if self._start_time:
            uptime = (utcnow() - self._start_time).total_seconds()

        return {
            'running': self._running,
            'active_jobs': len(self._active_jobs),
            'processed_count': self._processed_count,
            'failed_count': self._failed_count,
            'retried_count': self._retried_count,
            'uptime_seconds': uptime
        }


async def run_worker(
    queue: JobQueue,
    orchestrator: 'ChainOrchestrator',
    config: Optional[WorkerConfig] = None,
    policy: Optional[RetryPolicy] = None
) -> None:
    """
    Convenience function to run a worker.

    Args:
        queue: Job queue to poll
        orchestrator: Orchestrator whose runners execute the jobs
        config: Optional worker configuration
        policy: Optional retry policy
    """
    worker = Worker(queue, orchestrator, config, policy)
    await worker.run()
