"""Error taxonomy and reason schema contracts.

TypedDict schemas give each quarantine reason code a fixed detail shape.
Exceptions follow the engine's propagation policy:

- IntegrityError, TransactionAbort: fatal to the current unit, recorded in the
  run outcome, never swallowed.
- ValidationFailure, ReferenceNotReadyError: recoverable, the row is
  quarantined and the pipeline continues.
- DuplicateDeliveryError: treated as success (no-op).
- ConcurrentRunConflict: surfaced to the orchestrator as retry-later.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict

from fundtrace.contracts.enums import ReasonCode


# =============================================================================
# Reason detail payloads (one shape per ReasonCode)
# =============================================================================


class MissingFieldDetail(TypedDict):
    field: str


class InvalidValueDetail(TypedDict):
    field: str
    message: str
    value: NotRequired[str]


class MissingReferenceDetail(TypedDict):
    field: str
    parent_kind: str
    value: str


class NegativeAmountDetail(TypedDict):
    field: str
    value: str


class DateOutOfRangeDetail(TypedDict):
    field: str
    value: str
    earliest: str
    latest: str


class InvertedDateRangeDetail(TypedDict):
    start_field: str
    end_field: str
    start: str
    end: str


class DuplicateKeyDetail(TypedDict):
    field: str
    value: str
    occurrences: int


class MalformedRecordDetail(TypedDict):
    message: str
    topic: NotRequired[str]


ReasonDetail = (
    MissingFieldDetail
    | InvalidValueDetail
    | MissingReferenceDetail
    | NegativeAmountDetail
    | DateOutOfRangeDetail
    | InvertedDateRangeDetail
    | DuplicateKeyDetail
    | MalformedRecordDetail
)


@dataclass(frozen=True, slots=True)
class Reason:
    """One (reason code, detail) pair attached to a quarantine record."""

    code: ReasonCode
    detail: ReasonDetail

    def __post_init__(self) -> None:
        if not isinstance(self.code, ReasonCode):
            raise TypeError(f"code must be ReasonCode, got {type(self.code).__name__}: {self.code!r}")

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code.value, "detail": dict(self.detail)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Reason:
        return cls(code=ReasonCode(data["code"]), detail=data["detail"])


class ExecutionError(TypedDict):
    """Schema for unit/run failure payloads stored in the warehouse."""

    exception: str
    type: str
    object_id: NotRequired[str]
    version: NotRequired[int]


# =============================================================================
# Exceptions
# =============================================================================


class IntegrityError(Exception):
    """Raised when stored bytes don't match their recorded digest.

    This indicates storage corruption, tampering, or a bug. The object
    version is flagged corrupt and is never served afterwards.
    """

    def __init__(self, message: str, *, object_id: str | None = None, version: int | None = None) -> None:
        super().__init__(message)
        self.object_id = object_id
        self.version = version


class ValidationFailure(Exception):
    """A candidate row failed one or more quality rules.

    Recoverable: the row is written to quarantine and the run continues.
    """

    def __init__(self, reasons: tuple[Reason, ...]) -> None:
        self.reasons = reasons
        codes = ", ".join(r.code.value for r in reasons)
        super().__init__(f"Quality gate rejected row: {codes}")


class ReferenceNotReadyError(ValidationFailure):
    """A dependent parent entity has not been committed yet.

    The row stays in quarantine with reason missing_reference and is
    re-evaluated on the next run.
    """


class DuplicateDeliveryError(Exception):
    """The ledger already holds a committed claim for this delivery."""

    def __init__(self, topic: str, partition: int, offset: int) -> None:
        self.topic = topic
        self.partition = partition
        self.offset = offset
        super().__init__(f"Delivery {topic}/{partition}/{offset} already committed")


class ConcurrentRunConflict(Exception):
    """A run with the same logical identity is already running."""

    def __init__(self, logical_id: str, running_run_id: str) -> None:
        self.logical_id = logical_id
        self.running_run_id = running_run_id
        super().__init__(f"Logical run '{logical_id}' is already running as {running_run_id}; retry later")


AlreadyRunningError = ConcurrentRunConflict


class TransactionAbort(Exception):
    """A transactional unit failed and was rolled back in full.

    Carries the unit coordinates so the run outcome can record them.
    """

    def __init__(self, object_id: str, version: int | None, cause: BaseException) -> None:
        self.object_id = object_id
        self.version = version
        self.cause = cause
        super().__init__(f"Unit {object_id}@{version} rolled back: {type(cause).__name__}: {cause}")

    def to_error(self) -> ExecutionError:
        error: ExecutionError = {
            "exception": str(self.cause),
            "type": type(self.cause).__name__,
            "object_id": self.object_id,
        }
        if self.version is not None:
            error["version"] = self.version
        return error


class InvalidRunTransition(Exception):
    """A run was asked to move between lifecycle states that are not connected."""


class WarehouseIntegrityError(Exception):
    """The warehouse holds data that violates an engine invariant.

    The warehouse is our own data: this is a bug or corruption, so crash.
    """
