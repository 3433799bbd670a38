from invoicechain.db.connection import Database
from invoicechain.db.repository import RecordNotFoundError, RecordRepository

__all__ = ['Database', 'RecordNotFoundError', 'RecordRepository']
