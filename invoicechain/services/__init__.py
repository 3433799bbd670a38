from invoicechain.services.invoice_service import InvoiceService

__all__ = ['InvoiceService']
