"""
Tests for record persistence
"""

from datetime import date

import pytest

from invoicechain.db.repository import RecordNotFoundError
from invoicechain.models.record import (
    ExtractionOutput,
    InvoiceRecord,
    OverallStatus,
    Step,
    StepStatus,
)


class TestRecordRepository:
    """Tests for RecordRepository"""

    def test_create_and_load(self, repository, make_record):
        record = make_record(manual_date=date(2025, 4, 1))

        loaded = repository.load(record.id)

        assert loaded.model_dump() == record.model_dump()
        assert loaded.manual_date == date(2025, 4, 1)
        assert repository.exists(record.id)

    def test_load_unknown(self, repository):
        with pytest.raises(RecordNotFoundError) as exc_info:
            repository.load('inv_missing')
        assert exc_info.value.record_id == 'inv_missing'
        assert not repository.exists('inv_missing')

    def test_save_round_trips_step_state(self, repository, clock, make_record):
        record = make_record()
        record.advance_step(Step.EXTRACTION, StepStatus.PROCESSING, now=clock())
        record.advance_step(
            Step.EXTRACTION, StepStatus.COMPLETED,
            output=ExtractionOutput(particulars='Acme', amount='42.5'), now=clock()
        )
        repository.save(record)

        loaded = repository.load(record.id)
        assert loaded.status_of(Step.EXTRACTION) == StepStatus.COMPLETED
        assert loaded.state_of(Step.EXTRACTION).claimed_at == clock()
        assert loaded.output_of(Step.EXTRACTION)['amount'] == '42.50'
        assert loaded.overall_status == OverallStatus.PROCESSING

    def test_save_unknown(self, repository):
        record = InvoiceRecord(source_uri='file:///tmp/x.png')
        with pytest.raises(RecordNotFoundError):
            repository.save(record)

    def test_claim_step_checks_predecessors(self, repository, clock, make_record):
        record = make_record()
        record.steps[Step.ARCHIVAL].status = StepStatus.PROCESSING

        assert not repository.claim_step(record, Step.ARCHIVAL, StepStatus.PENDING, None)
        assert repository.load(record.id).status_of(Step.ARCHIVAL) == StepStatus.PENDING

    def test_finish_step_requires_current_claim(self, repository, clock, make_record):
        record = make_record()
        record.advance_step(Step.EXTRACTION, StepStatus.PROCESSING, now=clock())
        assert repository.claim_step(record, Step.EXTRACTION, StepStatus.PENDING, None)
        stale_claim = record.state_of(Step.EXTRACTION).claimed_at

        clock.advance(601)
        newer = repository.load(record.id)
        newer.advance_step(Step.EXTRACTION, StepStatus.PROCESSING, now=clock())
        assert repository.claim_step(newer, Step.EXTRACTION, StepStatus.PROCESSING, stale_claim)

        record.advance_step(Step.EXTRACTION, StepStatus.FAILED, error="timed out", now=clock())
        assert not repository.finish_step(record, Step.EXTRACTION, stale_claim)
        assert repository.load(record.id).status_of(Step.EXTRACTION) == StepStatus.PROCESSING

        newer.advance_step(
            Step.EXTRACTION, StepStatus.COMPLETED, output=ExtractionOutput(particulars='Acme'), now=clock()
        )
        assert repository.finish_step(newer, Step.EXTRACTION, clock())
        loaded = repository.load(record.id)
        assert loaded.status_of(Step.EXTRACTION) == StepStatus.COMPLETED
        assert loaded.output_of(Step.EXTRACTION)['particulars'] == 'Acme'
        assert loaded.error_message is None

    def test_list_by_status(self, repository, clock, make_record):
        failed = make_record()
        failed.advance_step(Step.EXTRACTION, StepStatus.PROCESSING, now=clock())
        failed.advance_step(Step.EXTRACTION, StepStatus.FAILED, error='boom', now=clock())
        repository.save(failed)
        make_record()

        assert [r.id for r in repository.list_by_status(OverallStatus.FAILED)] == [failed.id]
        assert len(repository.list_by_status(OverallStatus.PENDING)) == 1

    def test_list_ready_for(self, repository, clock, make_record):
        fresh = make_record()
        extracted = make_record()
        extracted.advance_step(Step.EXTRACTION, StepStatus.PROCESSING, now=clock())
        extracted.advance_step(Step.EXTRACTION, StepStatus.COMPLETED, output=ExtractionOutput(), now=clock())
        repository.save(extracted)

        assert [r.id for r in repository.list_ready_for(Step.EXTRACTION)] == [fresh.id]
        assert [r.id for r in repository.list_ready_for(Step.ARCHIVAL)] == [extracted.id]
        assert repository.list_ready_for(Step.LEDGER) == []
