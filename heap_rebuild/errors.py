"""Error taxonomy. Every error carries a machine-readable code + message."""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import HeapCandidate


class HeapRebuildError(Exception):
    """Base error."""
    code: str = "UNKNOWN_ERROR"

    def __init__(self, message: str = "", code: str | None = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error_code": self.code, "message": self.message}


class ContractViolation(HeapRebuildError):
    """Invocation parameters violate the run contract. Raised before any state changes."""
    code = "CONTRACT_VIOLATION"

    def __init__(self, violations: list[str]):
        self.violations = list(violations)
        super().__init__(" ".join(self.violations))


class MetadataAccessError(HeapRebuildError):
    code = "METADATA_ACCESS"


class TableNotFoundError(HeapRebuildError):
    code = "TABLE_NOT_FOUND"


class RemediationError(HeapRebuildError):
    code = "REMEDIATION_FAILED"

    def __init__(self, message: str, *, command_text: str, candidate: HeapCandidate | None = None):
        self.command_text = command_text
        self.candidate = candidate
        super().__init__(message)


class WorkQueueError(HeapRebuildError):
    """The local work queue could not be read or written."""
    code = "WORK_QUEUE"
