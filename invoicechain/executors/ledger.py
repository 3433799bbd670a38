import csv
import logging
import threading
from pathlib import Path
from typing import Any, List, Optional

from invoicechain.executors.base import ExecutionError, PermanentExecutionError, StepExecutor
from invoicechain.models.record import InvoiceRecord, LedgerOutput, Step

logger = logging.getLogger(__name__)

LEDGER_COLUMNS = [
    'Date',
    'Particulars',
    'Type',
    'Classification',
    'Description',
    'Amount INR',
    'Amount USD',
    'Mode of transaction',
    'Invoice link',
    'Record ID',
]


def _cell(value: Any) -> str:
    return '' if value is None else str(value)


class CSVLedgerExecutor(StepExecutor):
    """
    Ledger step: appends one row per invoice to a CSV ledger.

    A row already carrying the record id is returned as is, so re-running
    the step after a lost acknowledgement does not append a second row.
    """

    step = Step.LEDGER

    # Shared by every executor in the process; rows are appended one at a time
    _lock = threading.Lock()

    def __init__(self, path: str):
        self.path = Path(path)

    def _row_url(self, row: int) -> str:
        return f"{self.path.resolve().as_uri()}#row={row}"

    def _find_row(self, record_id: str) -> Optional[int]:
        if not self.path.exists():
            return None
        with self.path.open(newline='', encoding='utf-8') as f:
            reader = csv.DictReader(f)
            for index, row in enumerate(reader, start=1):
                if row.get('Record ID') == record_id:
                    return index
        return None

    def _count_rows(self) -> int:
        with self.path.open(newline='', encoding='utf-8') as f:
            return max(sum(1 for _ in csv.reader(f)) - 1, 0)

    def build_row(self, record: InvoiceRecord) -> List[str]:
        extraction = record.extraction
        archival = record.archival
        if extraction is None or archival is None:
            raise PermanentExecutionError("Extraction or archival output is missing")

        return [
            _cell(extraction.display_date or extraction.date),
            _cell(extraction.particulars),
            _cell(extraction.transaction_type),
            _cell(extraction.classification),
            _cell(extraction.description),
            _cell(extraction.amount_inr),
            _cell(extraction.amount_usd),
            _cell(extraction.mode_of_transaction),
            archival.url,
            record.id,
        ]

    def execute(self, record: InvoiceRecord) -> LedgerOutput:
        values = self.build_row(record)

        try:
            with self._lock:
                existing = self._find_row(record.id)
                if existing is not None:
                    logger.info(f"Ledger row {existing} already exists for record {record.id}")
                    return LedgerOutput(row=existing, url=self._row_url(existing))

                self.path.parent.mkdir(parents=True, exist_ok=True)
                write_header = not self.path.exists() or self.path.stat().st_size == 0
                with self.path.open('a', newline='', encoding='utf-8') as f:
                    writer = csv.writer(f)
                    if write_header:
                        writer.writerow(LEDGER_COLUMNS)
                    writer.writerow(values)
                row = self._count_rows()
        except OSError as e:
            raise ExecutionError(f"Could not write ledger {self.path}: {e}")

        logger.info(f"Appended ledger row {row} for record {record.id}")
        return LedgerOutput(row=row, url=self._row_url(row))
