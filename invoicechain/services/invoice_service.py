"""
Invoice Service

High-level entry point for submitting invoices and for operators
following up on them.
Provides a clean API for:
- Ingesting an invoice image
- Status querying
- Re-invoking a record whose retries were exhausted
- Listing records by state
"""

import logging
import mimetypes
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

from invoicechain.chain.orchestrator import ChainOrchestrator
from invoicechain.db.repository import RecordRepository
from invoicechain.models.record import InvoiceRecord, OverallStatus, Step

logger = logging.getLogger(__name__)


class InvoiceService:
    """
    Service for driving invoices through the chain.

    Usage:
        service = InvoiceService(repository, orchestrator)

        record_id = service.ingest('receipts/lunch.jpg')
        print(service.get_status(record_id))

        # After the worker gave up on a step
        service.retry(record_id)
    """

    def __init__(self, repository: RecordRepository, orchestrator: ChainOrchestrator):
        self.repository = repository
        self.orchestrator = orchestrator

    def ingest(
        self,
        file_path: str,
        manual_date: Optional[date] = None,
        content_type: Optional[str] = None
    ) -> str:
        """
        Create a record for an invoice image and start the chain.

        Args:
            file_path: Path to the invoice image
            manual_date: Invoice date entered by the submitter, overrides
                the extracted one
            content_type: MIME type; guessed from the file name if omitted

        Returns:
            The new record id

        Raises:
            FileNotFoundError: If the image does not exist
        """
        path = Path(file_path)
        if not path.is_file():
            raise FileNotFoundError(f"Invoice image not found: {file_path}")

        record = InvoiceRecord(
            source_uri=path.resolve().as_uri(),
            content_type=content_type or mimetypes.guess_type(path.name)[0] or 'image/jpeg',
            original_filename=path.name,
            manual_date=manual_date
        )
        self.repository.create(record)
        self.orchestrator.submit(record.id)

        logger.info(f"Ingested {path.name} as record {record.id}")
        return record.id

    def get_status(self, record_id: str) -> Dict[str, Any]:
        """Plain dictionary summary of a record"""
        return self.orchestrator.status(record_id).summary()

    def retry(self, record_id: str) -> Optional[Step]:
        """
        Re-invoke the first unfinished step of a record.

        Returns:
            The step dispatched, or None if the record is already completed
        """
        return self.orchestrator.resume(record_id)

    def list_failed(self, limit: int = 100) -> List[InvoiceRecord]:
        return self.repository.list_by_status(OverallStatus.FAILED, limit)

    def list_completed(self, limit: int = 100) -> List[InvoiceRecord]:
        return self.repository.list_by_status(OverallStatus.COMPLETED, limit)

    def list_by_status(self, status: OverallStatus, limit: int = 100) -> List[InvoiceRecord]:
        return self.repository.list_by_status(status, limit)

    def list_ready_for(self, step: Step, limit: int = 100) -> List[InvoiceRecord]:
        """Records waiting for ``step`` with every earlier step completed"""
        return self.repository.list_ready_for(step, limit)
