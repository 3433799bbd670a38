"""
Wiring of the chain from configuration
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from invoicechain.chain.orchestrator import ChainOrchestrator, Dispatcher, InlineDispatcher, QueueDispatcher
from invoicechain.chain.retry import RetryPolicy
from invoicechain.chain.runner import StepRunner
from invoicechain.config.chain_config import ChainConfig
from invoicechain.db.connection import Database
from invoicechain.db.repository import RecordRepository
from invoicechain.executors.archival import StorageArchivalExecutor
from invoicechain.executors.base import StepExecutor
from invoicechain.executors.extraction import ClaudeExtractionExecutor
from invoicechain.executors.ledger import CSVLedgerExecutor
from invoicechain.jobs.queue import JobQueue
from invoicechain.jobs.worker import Worker, WorkerConfig
from invoicechain.models.record import Step
from invoicechain.services.invoice_service import InvoiceService
from invoicechain.storage.storage_factory import StorageFactory

logger = logging.getLogger(__name__)


@dataclass
class Chain:
    """Everything a process needs to submit and run invoices"""
    config: ChainConfig
    db: Database
    repository: RecordRepository
    queue: JobQueue
    policy: RetryPolicy
    orchestrator: ChainOrchestrator
    service: InvoiceService

    def worker(self, worker_config: Optional[WorkerConfig] = None) -> Worker:
        return Worker(
            self.queue,
            self.orchestrator,
            worker_config or WorkerConfig.from_config(self.config),
            self.policy
        )


def build_executors(config: ChainConfig) -> Dict[Step, StepExecutor]:
    """Create the reference executors described by ``config``"""
    storage_config = config.get_storage_config()
    storage = StorageFactory.create_storage(storage_config)

    return {
        Step.EXTRACTION: ClaudeExtractionExecutor.from_config(config.get('extraction', {}) or {}),
        Step.ARCHIVAL: StorageArchivalExecutor(storage, folder=storage_config.get('folder', 'invoices')),
        Step.LEDGER: CSVLedgerExecutor(config.get('ledger.path', 'ledger/invoices.csv')),
    }


def build_chain(
    config: Optional[ChainConfig] = None,
    db: Optional[Database] = None,
    executors: Optional[Dict[Step, StepExecutor]] = None,
    dispatcher: Optional[Dispatcher] = None
) -> Chain:
    """
    Wire database, executors, runners, dispatcher and service together

    Args:
        config: Configuration; the process-wide one if omitted
        db: Database to use instead of the configured one
        executors: Executors per step instead of the reference ones
        dispatcher: Dispatcher instead of the one named by ``chain.dispatch``
    """
    config = config or ChainConfig.instance()
    db = db or Database(config)
    repository = RecordRepository(db)
    queue = JobQueue(db)
    policy = RetryPolicy.from_config(config.get('retry'))
    executors = executors or build_executors(config)

    lease_seconds = float(config.get('chain.lease_seconds', 600))
    runners = [
        StepRunner(step, executors[step], repository, lease_seconds=lease_seconds)
        for step in Step.ordered()
    ]

    if dispatcher is None:
        mode = config.get('chain.dispatch', 'queue')
        if mode == 'inline':
            dispatcher = InlineDispatcher(policy)
        else:
            dispatcher = QueueDispatcher(queue)
        logger.debug(f"Using {mode} dispatch")

    orchestrator = ChainOrchestrator(runners, repository, dispatcher)
    service = InvoiceService(repository, orchestrator)

    return Chain(
        config=config,
        db=db,
        repository=repository,
        queue=queue,
        policy=policy,
        orchestrator=orchestrator,
        service=service
    )
