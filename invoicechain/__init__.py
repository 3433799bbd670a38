"""
InvoiceChain - drives submitted invoice images through extraction,
archival and ledger recording, one idempotent step at a time.
"""

from invoicechain.bootstrap import Chain, build_chain
from invoicechain.chain import ChainOrchestrator, RetryPolicy, StepOutcome, StepRunner
from invoicechain.config import ChainConfig
from invoicechain.models import InvoiceRecord, OverallStatus, Step, StepStatus

__version__ = "0.1.0"

__all__ = [
    'Chain',
    'ChainConfig',
    'ChainOrchestrator',
    'InvoiceRecord',
    'OverallStatus',
    'RetryPolicy',
    'Step',
    'StepOutcome',
    'StepRunner',
    'StepStatus',
    'build_chain',
]
