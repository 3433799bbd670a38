"""
Shared fixtures: in-memory database, scripted executors and a record factory
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional

import pytest

from invoicechain.chain.orchestrator import ChainOrchestrator, InlineDispatcher, QueueDispatcher
from invoicechain.chain.runner import StepRunner
from invoicechain.config.chain_config import ChainConfig
from invoicechain.db.connection import Database
from invoicechain.db.repository import RecordRepository
from invoicechain.executors.base import ExecutionError, StepExecutor
from invoicechain.jobs.queue import JobQueue
from invoicechain.models.record import (
    ArchivalOutput,
    ExtractionOutput,
    InvoiceRecord,
    LedgerOutput,
    Step,
)


class ScriptedExecutor(StepExecutor):
    """Executor that fails a fixed number of times, then returns outputs"""

    def __init__(
        self,
        step: Step,
        make_output: Callable[[int], object],
        failures: int = 0,
        error: type = ExecutionError
    ):
        self.step = step
        self.make_output = make_output
        self.failures = failures
        self.error = error
        self.calls = 0
        self.seen: List[InvoiceRecord] = []

    def execute(self, record: InvoiceRecord):
        self.calls += 1
        self.seen.append(record)
        if self.calls <= self.failures:
            raise self.error(f"{self.step.value} failure #{self.calls}")
        return self.make_output(self.calls)


def extraction_output(call: int = 1) -> ExtractionOutput:
    return ExtractionOutput(particulars="Acme", date="2025-01-01", amount=42.50, currency="USD")


def archival_output(call: int = 1) -> ArchivalOutput:
    return ArchivalOutput(url="https://x/y", id="f1")


def ledger_output(call: int = 1) -> LedgerOutput:
    return LedgerOutput(row=7, url="https://sheet/..#row7")


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def config(tmp_path):
    return ChainConfig(
        config={
            'database': {'type': 'sqlite', 'path': str(tmp_path / 'chain.db')},
            'storage': {'filesystem': {'path': str(tmp_path / 'archive')}},
            'ledger': {'path': str(tmp_path / 'ledger' / 'invoices.csv')},
        },
        config_file=tmp_path / 'config.yaml'
    )


@pytest.fixture
def db(config):
    database = Database(config, url='sqlite://')
    yield database
    database.dispose()


@pytest.fixture
def repository(db):
    return RecordRepository(db)


@pytest.fixture
def queue(db):
    return JobQueue(db)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def executors():
    return {
        Step.EXTRACTION: ScriptedExecutor(Step.EXTRACTION, extraction_output),
        Step.ARCHIVAL: ScriptedExecutor(Step.ARCHIVAL, archival_output),
        Step.LEDGER: ScriptedExecutor(Step.LEDGER, ledger_output),
    }


@pytest.fixture
def runners(executors, repository, clock):
    return {
        step: StepRunner(step, executor, repository, lease_seconds=600, clock=clock)
        for step, executor in executors.items()
    }


@pytest.fixture
def queue_orchestrator(runners, repository, queue):
    return ChainOrchestrator(runners.values(), repository, QueueDispatcher(queue))


@pytest.fixture
def inline_orchestrator(runners, repository):
    return ChainOrchestrator(runners.values(), repository, InlineDispatcher())


@pytest.fixture
def invoice_file(tmp_path):
    path = tmp_path / 'lunch.png'
    path.write_bytes(b'fake image bytes')
    return path


@pytest.fixture
def make_record(repository, invoice_file):
    def _make(**kwargs) -> InvoiceRecord:
        kwargs.setdefault('source_uri', invoice_file.resolve().as_uri())
        kwargs.setdefault('content_type', 'image/png')
        kwargs.setdefault('original_filename', invoice_file.name)
        record = InvoiceRecord(**kwargs)
        return repository.create(record)
    return _make
