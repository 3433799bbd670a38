from invoicechain.executors.base import (
    ExecutionError,
    PermanentExecutionError,
    StepExecutor,
)
from invoicechain.executors.archival import StorageArchivalExecutor
from invoicechain.executors.extraction import ClaudeExtractionExecutor
from invoicechain.executors.ledger import CSVLedgerExecutor

__all__ = [
    'CSVLedgerExecutor',
    'ClaudeExtractionExecutor',
    'ExecutionError',
    'PermanentExecutionError',
    'StepExecutor',
    'StorageArchivalExecutor',
]
