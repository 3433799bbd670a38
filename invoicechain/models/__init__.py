from invoicechain.models.record import (
    ArchivalOutput,
    ExtractionOutput,
    InvoiceRecord,
    LedgerOutput,
    OverallStatus,
    Step,
    StepState,
    StepStatus,
    StepTransitionError,
)

__all__ = [
    'ArchivalOutput',
    'ExtractionOutput',
    'InvoiceRecord',
    'LedgerOutput',
    'OverallStatus',
    'Step',
    'StepState',
    'StepStatus',
    'StepTransitionError',
]
