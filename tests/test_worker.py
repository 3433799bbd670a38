"""
Tests for the async step job worker
"""

import asyncio

import pytest

from invoicechain.chain.orchestrator import ChainOrchestrator, QueueDispatcher
from invoicechain.chain.retry import RetryPolicy
from invoicechain.chain.runner import StepRunner
from invoicechain.config.chain_config import ChainConfig
from invoicechain.executors.base import PermanentExecutionError
from invoicechain.jobs.queue import JobStatus
from invoicechain.jobs.worker import Worker, WorkerConfig
from invoicechain.models.record import OverallStatus, Step, StepStatus

from conftest import ScriptedExecutor, archival_output


def make_worker(queue, orchestrator, max_attempts=3):
    return Worker(
        queue,
        orchestrator,
        WorkerConfig(poll_interval=0.01, max_concurrent=1, shutdown_timeout=1.0),
        RetryPolicy(max_attempts=max_attempts, delay_seconds=0)
    )


def orchestrator_with(runners, repository, queue, clock, archival_executor):
    runners[Step.ARCHIVAL] = StepRunner(Step.ARCHIVAL, archival_executor, repository, clock=clock)
    return ChainOrchestrator(runners.values(), repository, QueueDispatcher(queue))


class TestWorker:
    """Tests for Worker job processing"""

    @pytest.mark.asyncio
    async def test_drain_completes_chain(self, queue_orchestrator, queue, repository, make_record):
        record = make_record()
        queue_orchestrator.submit(record.id)
        worker = make_worker(queue, queue_orchestrator)

        processed = await worker.drain()

        assert processed == 3
        assert repository.load(record.id).overall_status == OverallStatus.COMPLETED
        jobs = queue.list_jobs(record.id)
        assert [job['step'] for job in jobs] == ['extraction', 'archival', 'ledger']
        assert all(job['status'] == JobStatus.COMPLETED.value for job in jobs)
        assert all(job['outcome'] == 'success' for job in jobs)
        assert worker.get_stats()['processed_count'] == 3

    @pytest.mark.asyncio
    async def test_retry_converges(self, runners, repository, queue, clock, make_record):
        failing = ScriptedExecutor(Step.ARCHIVAL, archival_output, failures=2)
        orchestrator = orchestrator_with(runners, repository, queue, clock, failing)
        record = make_record()
        orchestrator.submit(record.id)
        worker = make_worker(queue, orchestrator)

        await worker.drain()

        stored = repository.load(record.id)
        assert stored.overall_status == OverallStatus.COMPLETED
        assert failing.calls == 3
        archival_job = [job for job in queue.list_jobs(record.id) if job['step'] == 'archival'][0]
        assert archival_job['attempts'] == 3
        assert archival_job['status'] == JobStatus.COMPLETED.value
        assert worker.get_stats()['retried_count'] == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_dead_letter(self, runners, repository, queue, clock, make_record):
        failing = ScriptedExecutor(Step.ARCHIVAL, archival_output, failures=10)
        orchestrator = orchestrator_with(runners, repository, queue, clock, failing)
        record = make_record()
        orchestrator.submit(record.id)
        worker = make_worker(queue, orchestrator)

        await worker.drain()

        assert failing.calls == 3
        stored = repository.load(record.id)
        assert stored.overall_status == OverallStatus.FAILED
        assert stored.status_of(Step.LEDGER) == StepStatus.PENDING
        dead = queue.get_dead_letter_jobs()
        assert len(dead) == 1
        assert dead[0]['step'] == 'archival'
        assert 'Max retries exceeded' in dead[0]['last_error']

    @pytest.mark.asyncio
    async def test_permanent_failure_dead_letters_at_once(self, runners, repository, queue, clock, make_record):
        failing = ScriptedExecutor(Step.ARCHIVAL, archival_output, failures=1, error=PermanentExecutionError)
        orchestrator = orchestrator_with(runners, repository, queue, clock, failing)
        record = make_record()
        orchestrator.submit(record.id)
        worker = make_worker(queue, orchestrator)

        await worker.drain()

        assert failing.calls == 1
        dead = queue.get_dead_letter_jobs()
        assert 'Permanent failure' in dead[0]['last_error']

    @pytest.mark.asyncio
    async def test_operator_retry_after_dead_letter(self, runners, repository, queue, clock, make_record):
        failing = ScriptedExecutor(Step.ARCHIVAL, archival_output, failures=3)
        orchestrator = orchestrator_with(runners, repository, queue, clock, failing)
        record = make_record()
        orchestrator.submit(record.id)
        worker = make_worker(queue, orchestrator)
        await worker.drain()
        assert repository.load(record.id).overall_status == OverallStatus.FAILED

        assert orchestrator.resume(record.id) == Step.ARCHIVAL
        await worker.drain()

        assert repository.load(record.id).overall_status == OverallStatus.COMPLETED
        assert failing.calls == 4

    @pytest.mark.asyncio
    async def test_not_ready_job_completes_without_work(self, queue_orchestrator, executors, queue, make_record):
        record = make_record()
        job_id = queue.enqueue(record.id, Step.LEDGER)
        worker = make_worker(queue, queue_orchestrator)

        await worker.run_once()

        status = queue.get_job_status(job_id)
        assert status['status'] == JobStatus.COMPLETED.value
        assert status['outcome'] == 'not_ready'
        assert executors[Step.LEDGER].calls == 0

    @pytest.mark.asyncio
    async def test_unknown_record_dead_letters(self, queue_orchestrator, queue):
        job_id = queue.enqueue('inv_missing', Step.EXTRACTION)
        worker = make_worker(queue, queue_orchestrator)

        await worker.run_once()

        assert queue.get_job_status(job_id)['status'] == JobStatus.DEAD_LETTER.value

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, queue_orchestrator, queue, repository, make_record):
        record = make_record()
        queue_orchestrator.submit(record.id)
        worker = make_worker(queue, queue_orchestrator)

        task = asyncio.create_task(worker.run())
        for _ in range(200):
            if worker.get_stats()['processed_count'] >= 3:
                break
            await asyncio.sleep(0.02)
        await worker.stop()
        await asyncio.wait_for(task, timeout=5)

        assert repository.load(record.id).overall_status == OverallStatus.COMPLETED
        assert not worker.get_stats()['running']


class TestWorkerConfig:
    """Tests for WorkerConfig"""

    def test_from_config(self):
        config = ChainConfig(config={'worker': {'poll_interval': 2.5, 'max_concurrent': 2}})

        worker_config = WorkerConfig.from_config(config)

        assert worker_config.poll_interval == 2.5
        assert worker_config.max_concurrent == 2
        assert worker_config.batch_size == 10
        assert worker_config.stale_job_timeout == 600.0
