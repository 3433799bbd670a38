"""
Invoice Record Model

The persistent unit of work for one submitted invoice. The record carries
an overall status, one tagged status per chain step and the output each
step produced. All mutations of step state go through
``InvoiceRecord.advance_step`` so the chain invariants are checked in one
place.
"""

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Type
from uuid import uuid4
import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

from invoicechain.utils import utcnow


class Step(str, Enum):
    """Chain steps, declared in execution order"""
    EXTRACTION = "extraction"
    ARCHIVAL = "archival"
    LEDGER = "ledger"

    @classmethod
    def ordered(cls) -> List['Step']:
        return list(cls)

    def position(self) -> int:
        return Step.ordered().index(self)

    def predecessors(self) -> List['Step']:
        """Steps that must be completed before this one may run"""
        return Step.ordered()[:self.position()]

    def next(self) -> Optional['Step']:
        chain = Step.ordered()
        idx = self.position() + 1
        return chain[idx] if idx < len(chain) else None


class StepStatus(str, Enum):
    """Status of a single chain step"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class OverallStatus(str, Enum):
    """Projected status of the whole record"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# processing -> processing is the reclaim of an expired lease
ALLOWED_TRANSITIONS = {
    StepStatus.PENDING: {StepStatus.PROCESSING},
    StepStatus.PROCESSING: {StepStatus.PROCESSING, StepStatus.COMPLETED, StepStatus.FAILED},
    StepStatus.FAILED: {StepStatus.PROCESSING},
    StepStatus.COMPLETED: set(),
}


class StepTransitionError(ValueError):
    """Raised when a mutation would break the chain invariants"""

    def __init__(self, step: Step, current: StepStatus, target: StepStatus, reason: str):
        self.step = step
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move step '{step.value}' from {current.value} to {target.value}: {reason}"
        )


def _parse_amount(v: Any) -> Optional[Decimal]:
    if v is None or v == '':
        return None
    if isinstance(v, Decimal):
        return v
    if isinstance(v, (int, float)):
        return Decimal(str(v)).quantize(Decimal('0.01'))
    if isinstance(v, str):
        # Remove currency symbols, commas, spaces
        cleaned = re.sub(r'[^\d.\-]', '', v.strip())
        if cleaned:
            try:
                return Decimal(cleaned).quantize(Decimal('0.01'))
            except InvalidOperation:
                raise ValueError(f"Invalid amount: {v}")
    raise ValueError(f"Invalid amount: {v}")


class ExtractionOutput(BaseModel):
    """Fields extracted from the invoice image"""
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    particulars: Optional[str] = None
    date: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None

    display_date: Optional[str] = None
    invoice_type: Optional[str] = None
    classification: Optional[str] = None
    description: Optional[str] = None
    transaction_type: Optional[str] = None
    mode_of_transaction: Optional[str] = None
    amount_inr: Optional[Decimal] = None
    amount_usd: Optional[Decimal] = None
    parsed_at: Optional[str] = None

    @field_validator('amount', 'amount_inr', 'amount_usd', mode='before')
    @classmethod
    def parse_amount(cls, v: Any) -> Optional[Decimal]:
        return _parse_amount(v)

    @field_validator('currency', mode='before')
    @classmethod
    def normalize_currency(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        v = str(v).strip().upper()
        symbol_map = {'$': 'USD', '€': 'EUR', '£': 'GBP', '¥': 'JPY', '₹': 'INR'}
        return symbol_map.get(v, v) or None


class ArchivalOutput(BaseModel):
    """Location of the archived source document"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    url: str = Field(..., min_length=1)
    object_id: str = Field(..., min_length=1, alias='id')


class LedgerOutput(BaseModel):
    """Locator of the ledger row written for the invoice"""
    model_config = ConfigDict(frozen=True)

    row: int = Field(..., ge=1)
    url: str = Field(..., min_length=1)


STEP_OUTPUT_MODELS: Dict[Step, Type[BaseModel]] = {
    Step.EXTRACTION: ExtractionOutput,
    Step.ARCHIVAL: ArchivalOutput,
    Step.LEDGER: LedgerOutput,
}


class StepState(BaseModel):
    """Status, output and claim bookkeeping of one step"""
    status: StepStatus = StepStatus.PENDING
    output: Optional[Dict[str, Any]] = None
    claimed_at: Optional[datetime] = None
    attempts: int = 0


def new_record_id() -> str:
    return f"inv_{uuid4().hex}"


class InvoiceRecord(BaseModel):
    """
    One invoice moving through the extraction -> archival -> ledger chain.

    ``overall_status`` is a projection of the step states: it is only
    ``completed`` when every step is completed, and it becomes ``failed``
    whenever a step fails. ``failed`` is not terminal; re-running the
    failed step resumes the chain.
    """
    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=new_record_id)
    source_uri: str
    content_type: Optional[str] = None
    original_filename: Optional[str] = None
    manual_date: Optional[date] = None

    overall_status: OverallStatus = OverallStatus.PENDING
    steps: Dict[Step, StepState] = Field(
        default_factory=lambda: {step: StepState() for step in Step.ordered()}
    )

    error_message: Optional[str] = None
    failed_step: Optional[Step] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    # Read helpers

    def state_of(self, step: Step) -> StepState:
        return self.steps[step]

    def status_of(self, step: Step) -> StepStatus:
        return self.steps[step].status

    def output_of(self, step: Step) -> Optional[Dict[str, Any]]:
        return self.steps[step].output

    def is_completed(self, step: Step) -> bool:
        return self.status_of(step) == StepStatus.COMPLETED

    def is_ready(self, step: Step) -> bool:
        """True when every step before ``step`` is completed"""
        return all(self.is_completed(p) for p in step.predecessors())

    def all_steps_completed(self) -> bool:
        return all(self.is_completed(step) for step in Step.ordered())

    def next_incomplete_step(self) -> Optional[Step]:
        for step in Step.ordered():
            if not self.is_completed(step):
                return step
        return None

    def typed_output(self, step: Step) -> Optional[BaseModel]:
        raw = self.output_of(step)
        if raw is None:
            return None
        return STEP_OUTPUT_MODELS[step].model_validate(raw)

    @property
    def extraction(self) -> Optional[ExtractionOutput]:
        return self.typed_output(Step.EXTRACTION)

    @property
    def archival(self) -> Optional[ArchivalOutput]:
        return self.typed_output(Step.ARCHIVAL)

    @property
    def ledger(self) -> Optional[LedgerOutput]:
        return self.typed_output(Step.LEDGER)

    # Mutation

    def advance_step(
        self,
        step: Step,
        status: StepStatus,
        output: Optional[BaseModel] = None,
        error: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> None:
        """
        Move ``step`` to ``status`` and update the overall projection.

        Args:
            step: Step being advanced
            status: Target status
            output: Step output, required when completing
            error: Failure text, used when failing
            now: Timestamp for claim/completion bookkeeping

        Raises:
            StepTransitionError: If the transition is not allowed, a
                predecessor is not completed, or output is missing
        """
        now = now or utcnow()
        state = self.steps[step]
        current = state.status

        if status not in ALLOWED_TRANSITIONS[current]:
            raise StepTransitionError(step, current, status, "transition not allowed")

        if status in (StepStatus.PROCESSING, StepStatus.COMPLETED) and not self.is_ready(step):
            raise StepTransitionError(step, current, status, "a previous step is not completed")

        if status == StepStatus.PROCESSING:
            state.status = StepStatus.PROCESSING
            state.claimed_at = now
            state.attempts += 1
            self.overall_status = OverallStatus.PROCESSING

        elif status == StepStatus.COMPLETED:
            if output is None:
                raise StepTransitionError(step, current, status, "no output supplied")
            model = STEP_OUTPUT_MODELS[step]
            if not isinstance(output, model):
                output = model.model_validate(output)
            state.output = output.model_dump(mode='json', by_alias=True)
            state.status = StepStatus.COMPLETED
            if self.all_steps_completed():
                self.overall_status = OverallStatus.COMPLETED
                if self.completed_at is None:
                    self.completed_at = now
            else:
                self.overall_status = OverallStatus.PROCESSING

        else:
            state.status = StepStatus.FAILED
            self.overall_status = OverallStatus.FAILED
            self.error_message = error or "Unknown error"
            self.failed_step = step

        self.updated_at = now

    def summary(self) -> Dict[str, Any]:
        """Plain dictionary view used by the service and CLI"""
        return {
            'id': self.id,
            'overall_status': self.overall_status.value,
            'steps': {
                step.value: {
                    'status': state.status.value,
                    'attempts': state.attempts,
                    'output': state.output,
                }
                for step, state in self.steps.items()
            },
            'error_message': self.error_message,
            'failed_step': self.failed_step.value if self.failed_step else None,
            'source_uri': self.source_uri,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }
