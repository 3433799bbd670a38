import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, select, update

from invoicechain.db.connection import Database
from invoicechain.db.models import InvoiceRecordRow
from invoicechain.models.record import (
    InvoiceRecord,
    OverallStatus,
    Step,
    StepState,
    StepStatus,
)

logger = logging.getLogger(__name__)


class RecordNotFoundError(LookupError):
    """Raised when a record id is unknown"""

    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"Invoice record not found: {record_id}")


def _column(step: Step, suffix: str):
    return getattr(InvoiceRecordRow, f"{step.value}_{suffix}")


class RecordRepository:
    """
    Persistence for ``InvoiceRecord`` aggregates.

    Records map onto one ``invoice_records`` row with a column group per
    step. ``claim_step`` is the only conditional write; everything else
    writes the aggregate wholesale.
    """

    def __init__(self, db: Database):
        self.db = db

    # Mapping

    @staticmethod
    def _to_record(row: InvoiceRecordRow) -> InvoiceRecord:
        steps = {
            step: StepState(
                status=StepStatus(getattr(row, f"{step.value}_status")),
                output=getattr(row, f"{step.value}_output"),
                claimed_at=getattr(row, f"{step.value}_claimed_at"),
                attempts=getattr(row, f"{step.value}_attempts") or 0,
            )
            for step in Step.ordered()
        }
        return InvoiceRecord(
            id=row.id,
            source_uri=row.source_uri,
            content_type=row.content_type,
            original_filename=row.original_filename,
            manual_date=row.manual_date,
            overall_status=OverallStatus(row.overall_status),
            steps=steps,
            error_message=row.error_message,
            failed_step=Step(row.failed_step) if row.failed_step else None,
            created_at=row.created_at,
            updated_at=row.updated_at,
            completed_at=row.completed_at,
        )

    @staticmethod
    def _apply(row: InvoiceRecordRow, record: InvoiceRecord) -> None:
        row.source_uri = record.source_uri
        row.content_type = record.content_type
        row.original_filename = record.original_filename
        row.manual_date = record.manual_date
        row.overall_status = record.overall_status.value
        for step in Step.ordered():
            state = record.state_of(step)
            setattr(row, f"{step.value}_status", state.status.value)
            setattr(row, f"{step.value}_output", state.output)
            setattr(row, f"{step.value}_claimed_at", state.claimed_at)
            setattr(row, f"{step.value}_attempts", state.attempts)
        row.error_message = record.error_message
        row.failed_step = record.failed_step.value if record.failed_step else None
        row.created_at = record.created_at
        row.updated_at = record.updated_at
        row.completed_at = record.completed_at

    # Operations

    def create(self, record: InvoiceRecord) -> InvoiceRecord:
        """Insert a new record"""
        with self.db.transaction() as session:
            row = InvoiceRecordRow(id=record.id)
            self._apply(row, record)
            session.add(row)
        logger.info(f"Created invoice record {record.id}")
        return record

    def load(self, record_id: str) -> InvoiceRecord:
        """
        Load a record by id

        Raises:
            RecordNotFoundError: If the id is unknown
        """
        with self.db.session() as session:
            row = session.get(InvoiceRecordRow, record_id)
            if row is None:
                raise RecordNotFoundError(record_id)
            return self._to_record(row)

    def exists(self, record_id: str) -> bool:
        with self.db.session() as session:
            return session.get(InvoiceRecordRow, record_id) is not None

    def save(self, record: InvoiceRecord) -> None:
        """
        Persist the whole aggregate

        Raises:
            RecordNotFoundError: If the record was never created
        """
        with self.db.transaction() as session:
            row = session.get(InvoiceRecordRow, record.id)
            if row is None:
                raise RecordNotFoundError(record.id)
            self._apply(row, record)

    def claim_step(
        self,
        record: InvoiceRecord,
        step: Step,
        expected_status: StepStatus,
        expected_claimed_at: Optional[datetime]
    ) -> bool:
        """
        Persist a claim of ``step`` only if nobody changed it since it was read.

        ``record`` must already carry the claimed state (see
        ``InvoiceRecord.advance_step``). The write is a single conditional
        UPDATE on the step's status and claim timestamp, so of two
        concurrent claimers exactly one sees its row updated.

        Args:
            record: Record holding the new ``processing`` state
            step: Step being claimed
            expected_status: Step status the claimer read
            expected_claimed_at: Claim timestamp the claimer read

        Returns:
            True if this caller now owns the step
        """
        state = record.state_of(step)
        claimed_col = _column(step, 'claimed_at')

        conditions = [
            InvoiceRecordRow.id == record.id,
            _column(step, 'status') == expected_status.value,
        ]
        if expected_claimed_at is None:
            conditions.append(claimed_col.is_(None))
        else:
            conditions.append(claimed_col == expected_claimed_at)
        for previous in step.predecessors():
            conditions.append(_column(previous, 'status') == StepStatus.COMPLETED.value)

        stmt = (
            update(InvoiceRecordRow)
            .where(and_(*conditions))
            .values({
                f"{step.value}_status": state.status.value,
                f"{step.value}_claimed_at": state.claimed_at,
                f"{step.value}_attempts": state.attempts,
                'overall_status': record.overall_status.value,
                'updated_at': record.updated_at,
            })
            .execution_options(synchronize_session=False)
        )

        with self.db.transaction() as session:
            result = session.execute(stmt)
            claimed = result.rowcount == 1

        if not claimed:
            logger.debug(f"Lost claim on step {step.value} of record {record.id}")
        return claimed

    def finish_step(self, record: InvoiceRecord, step: Step, claimed_at: datetime) -> bool:
        """
        Persist the completion or failure of a claimed step.

        The write only lands while the step is still ``processing`` under
        the claim taken at ``claimed_at``. A runner whose lease expired and
        was taken over by another invocation gets False and writes nothing.

        Args:
            record: Record holding the completed or failed step state
            step: Step being finished
            claimed_at: Claim timestamp of the invocation finishing the step

        Returns:
            True if the claim was still held and the result was written
        """
        state = record.state_of(step)

        stmt = (
            update(InvoiceRecordRow)
            .where(and_(
                InvoiceRecordRow.id == record.id,
                _column(step, 'status') == StepStatus.PROCESSING.value,
                _column(step, 'claimed_at') == claimed_at,
            ))
            .values({
                f"{step.value}_status": state.status.value,
                f"{step.value}_output": state.output,
                f"{step.value}_claimed_at": state.claimed_at,
                f"{step.value}_attempts": state.attempts,
                'overall_status': record.overall_status.value,
                'error_message': record.error_message,
                'failed_step': record.failed_step.value if record.failed_step else None,
                'updated_at': record.updated_at,
                'completed_at': record.completed_at,
            })
            .execution_options(synchronize_session=False)
        )

        with self.db.transaction() as session:
            result = session.execute(stmt)
            finished = result.rowcount == 1

        if not finished:
            logger.warning(f"Claim on step {step.value} of record {record.id} was taken over, result discarded")
        return finished

    def list_by_status(self, status: OverallStatus, limit: int = 100) -> List[InvoiceRecord]:
        """List records by overall status, oldest first"""
        with self.db.session() as session:
            query = (
                select(InvoiceRecordRow)
                .where(InvoiceRecordRow.overall_status == status.value)
                .order_by(InvoiceRecordRow.created_at)
                .limit(limit)
            )
            return [self._to_record(row) for row in session.execute(query).scalars()]

    def list_ready_for(self, step: Step, limit: int = 100) -> List[InvoiceRecord]:
        """List records whose ``step`` is pending and whose earlier steps are completed"""
        conditions = [_column(step, 'status') == StepStatus.PENDING.value]
        for previous in step.predecessors():
            conditions.append(_column(previous, 'status') == StepStatus.COMPLETED.value)

        with self.db.session() as session:
            query = (
                select(InvoiceRecordRow)
                .where(and_(*conditions))
                .order_by(InvoiceRecordRow.created_at)
                .limit(limit)
            )
            return [self._to_record(row) for row in session.execute(query).scalars()]
