"""
Tests for wiring the chain from configuration
"""

from invoicechain.bootstrap import build_chain, build_executors
from invoicechain.chain.orchestrator import InlineDispatcher, QueueDispatcher
from invoicechain.executors.archival import StorageArchivalExecutor
from invoicechain.executors.extraction import ClaudeExtractionExecutor
from invoicechain.executors.ledger import CSVLedgerExecutor
from invoicechain.jobs.worker import WorkerConfig
from invoicechain.models.record import OverallStatus, Step
from invoicechain.storage.filesystem_storage import FileSystemStorage


def test_build_executors(config, tmp_path):
    executors = build_executors(config)

    assert isinstance(executors[Step.EXTRACTION], ClaudeExtractionExecutor)
    assert isinstance(executors[Step.ARCHIVAL], StorageArchivalExecutor)
    assert isinstance(executors[Step.ARCHIVAL].storage, FileSystemStorage)
    assert executors[Step.ARCHIVAL].folder == 'invoices'
    assert isinstance(executors[Step.LEDGER], CSVLedgerExecutor)
    assert executors[Step.LEDGER].path == tmp_path / 'ledger' / 'invoices.csv'


def test_queue_dispatch_by_default(config, db, executors):
    chain = build_chain(config, db=db, executors=executors)

    assert isinstance(chain.orchestrator.dispatcher, QueueDispatcher)
    assert chain.policy.max_attempts == 3
    assert chain.orchestrator.runners[Step.ARCHIVAL].lease_seconds == 600


def test_inline_dispatch_runs_chain(config, db, executors, invoice_file):
    config.set('chain.dispatch', 'inline')
    config.set('retry.delay_seconds', 0)

    chain = build_chain(config, db=db, executors=executors)
    record_id = chain.service.ingest(str(invoice_file))

    assert isinstance(chain.orchestrator.dispatcher, InlineDispatcher)
    assert chain.repository.load(record_id).overall_status == OverallStatus.COMPLETED
    assert chain.queue.get_queue_stats()['total'] == 0


def test_worker_uses_configured_settings(config, db, executors):
    config.set('worker.batch_size', 3)

    worker = build_chain(config, db=db, executors=executors).worker()

    assert worker.config.batch_size == 3
    assert worker.policy.max_attempts == 3
    assert worker.config == WorkerConfig.from_config(config)
