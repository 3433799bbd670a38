from abc import ABC, abstractmethod
from pathlib import Path
from urllib.parse import unquote, urlparse

from pydantic import BaseModel

from invoicechain.models.record import InvoiceRecord, Step


class ExecutionError(Exception):
    """A step executor could not perform its side effect; retrying may help"""

    retryable = True


class PermanentExecutionError(ExecutionError):
    """A step executor failed in a way retrying cannot fix"""

    retryable = False


class StepExecutor(ABC):
    """
    Performs the external side effect of one chain step.

    Executors know nothing about each other or about record status. They
    read what they need from the record and return the step's output
    model, or raise ``ExecutionError``.
    """

    step: Step

    @abstractmethod
    def execute(self, record: InvoiceRecord) -> BaseModel:
        """Run the side effect and return the step output

        Args:
            record: Current state of the record (read only)

        Returns:
            The output model for ``self.step``

        Raises:
            ExecutionError: On failure
        """
        pass

    def read_source(self, record: InvoiceRecord) -> bytes:
        """Read the submitted document bytes

        Raises:
            PermanentExecutionError: If the document is missing
        """
        path = source_path(record.source_uri)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise PermanentExecutionError(f"Source document not found: {path}")
        except OSError as e:
            raise ExecutionError(f"Could not read source document {path}: {e}")


def source_path(source_uri: str) -> Path:
    """Resolve a ``file://`` URI or a plain path to a local path"""
    parsed = urlparse(source_uri)
    if parsed.scheme == 'file':
        return Path(unquote(parsed.path))
    return Path(source_uri)
