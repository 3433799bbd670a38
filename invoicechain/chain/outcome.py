from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from invoicechain.models.record import Step


class OutcomeKind(str, Enum):
    """What a step runner invocation means for the scheduling shell"""
    SUCCESS = "success"
    NOT_READY = "not_ready"
    FAILED = "failed"


@dataclass(frozen=True)
class StepOutcome:
    """
    Result of one step runner invocation.

    The shell re-enqueues on a retryable ``FAILED`` outcome and does
    nothing on ``SUCCESS`` or ``NOT_READY``.
    """
    kind: OutcomeKind
    record_id: str
    step: Step
    reason: Optional[str] = None
    retryable: bool = True
    skipped: bool = False

    @classmethod
    def success(cls, record_id: str, step: Step, skipped: bool = False) -> 'StepOutcome':
        return cls(OutcomeKind.SUCCESS, record_id, step, skipped=skipped)

    @classmethod
    def not_ready(cls, record_id: str, step: Step, reason: str) -> 'StepOutcome':
        return cls(OutcomeKind.NOT_READY, record_id, step, reason=reason)

    @classmethod
    def failed(cls, record_id: str, step: Step, reason: str, retryable: bool = True) -> 'StepOutcome':
        return cls(OutcomeKind.FAILED, record_id, step, reason=reason, retryable=retryable)

    @property
    def is_success(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    @property
    def is_not_ready(self) -> bool:
        return self.kind == OutcomeKind.NOT_READY

    @property
    def is_failure(self) -> bool:
        return self.kind == OutcomeKind.FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'record_id': self.record_id,
            'step': self.step.value,
            'reason': self.reason,
            'retryable': self.retryable,
            'skipped': self.skipped,
        }
