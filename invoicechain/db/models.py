from uuid import uuid4

from sqlalchemy import Column, Date, DateTime, Index, Integer, JSON, String, Text
from sqlalchemy.orm import declarative_base

from invoicechain.utils import utcnow

Base = declarative_base()


class InvoiceRecordRow(Base):
    """Persisted state of one invoice moving through the step chain."""
    __tablename__ = 'invoice_records'

    id = Column(String(64), primary_key=True)
    source_uri = Column(Text, nullable=False)
    content_type = Column(String(100))
    original_filename = Column(String(255))
    manual_date = Column(Date)

    overall_status = Column(String(20), nullable=False, default='pending')

    extraction_status = Column(String(20), nullable=False, default='pending')
    extraction_output = Column(JSON)
    extraction_claimed_at = Column(DateTime)
    extraction_attempts = Column(Integer, nullable=False, default=0)

    archival_status = Column(String(20), nullable=False, default='pending')
    archival_output = Column(JSON)
    archival_claimed_at = Column(DateTime)
    archival_attempts = Column(Integer, nullable=False, default=0)

    ledger_status = Column(String(20), nullable=False, default='pending')
    ledger_output = Column(JSON)
    ledger_claimed_at = Column(DateTime)
    ledger_attempts = Column(Integer, nullable=False, default=0)

    error_message = Column(Text)
    failed_step = Column(String(20))

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    completed_at = Column(DateTime)

    __table_args__ = (
        Index('ix_invoice_records_overall_status', 'overall_status'),
    )

    def __repr__(self):
        return f"<InvoiceRecordRow(id={self.id}, overall_status='{self.overall_status}')>"


class StepJob(Base):
    """A queued invocation of one step runner for one record."""
    __tablename__ = 'step_jobs'

    id = Column(String(64), primary_key=True, default=lambda: f"job_{uuid4().hex}")
    record_id = Column(String(64), nullable=False)
    step = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default='PENDING')
    attempts = Column(Integer, nullable=False, default=0)
    run_after = Column(DateTime, default=utcnow, nullable=False)
    last_error = Column(Text)
    outcome = Column(String(20))
    created_at = Column(DateTime, default=utcnow, nullable=False)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    __table_args__ = (
        Index('ix_step_jobs_status_run_after', 'status', 'run_after'),
        Index('ix_step_jobs_record_step', 'record_id', 'step'),
    )

    def __repr__(self):
        return f"<StepJob(id={self.id}, record_id={self.record_id}, step='{self.step}', status='{self.status}')>"
