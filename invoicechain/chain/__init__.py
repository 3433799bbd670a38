from invoicechain.chain.outcome import OutcomeKind, StepOutcome
from invoicechain.chain.retry import RetryPolicy, run_with_retries
from invoicechain.chain.runner import StepRunner
from invoicechain.chain.orchestrator import (
    ChainOrchestrator,
    Dispatcher,
    InlineDispatcher,
    QueueDispatcher,
)

__all__ = [
    'ChainOrchestrator',
    'Dispatcher',
    'InlineDispatcher',
    'OutcomeKind',
    'QueueDispatcher',
    'RetryPolicy',
    'StepOutcome',
    'StepRunner',
    'run_with_retries',
]
