import logging
import re
from pathlib import Path

from invoicechain.executors.base import ExecutionError, PermanentExecutionError, StepExecutor
from invoicechain.models.record import ArchivalOutput, InvoiceRecord, Step
from invoicechain.storage.abstract_storage import AbstractStorage

logger = logging.getLogger(__name__)

UNSAFE_KEY_CHARS = re.compile(r'[\\/:*?"<>|\x00-\x1f]+')


def _sanitize(part: str) -> str:
    return UNSAFE_KEY_CHARS.sub('_', part).strip(' .') or 'Unknown'


class StorageArchivalExecutor(StepExecutor):
    """
    Archival step: uploads the source document to a storage backend.

    The object key is derived from the record alone, so a retried upload
    overwrites the same object instead of leaving a duplicate behind.
    """

    step = Step.ARCHIVAL

    def __init__(self, storage: AbstractStorage, folder: str = "invoices"):
        self.storage = storage
        self.folder = folder.strip('/')

    def object_key(self, record: InvoiceRecord) -> str:
        """``<folder>/<date> - <vendor> - Invoice <record id><ext>``"""
        extraction = record.extraction
        invoice_date = extraction.date if extraction and extraction.date else 'undated'
        vendor = extraction.particulars if extraction and extraction.particulars else 'Unknown'
        ext = Path(record.original_filename or record.source_uri).suffix.lower()

        name = f"{_sanitize(invoice_date)} - {_sanitize(vendor)} - Invoice {record.id}{ext}"
        return f"{self.folder}/{name}" if self.folder else name

    def execute(self, record: InvoiceRecord) -> ArchivalOutput:
        if record.extraction is None:
            raise PermanentExecutionError("Extraction output is missing")

        content = self.read_source(record)
        key = self.object_key(record)

        logger.info(f"Archiving record {record.id} as {key}")
        try:
            self.storage.save(key, content, content_type=record.content_type)
            url = self.storage.get_url(key)
        except ValueError as e:
            raise PermanentExecutionError(f"Invalid archive key {key}: {e}")
        except OSError as e:
            raise ExecutionError(f"Upload failed: {e}")

        return ArchivalOutput(url=url, id=key)
