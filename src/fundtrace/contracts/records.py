"""Warehouse record contracts.

These are strict contracts - all enum fields use proper enum types.
Repository layer handles string->enum conversion for DB reads.

The warehouse is OUR data. If we read garbage from it, something
catastrophic happened - crash immediately.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from fundtrace.contracts.enums import (
    CallKind,
    CallStatus,
    ClaimOutcome,
    ClaimStatus,
    ManifestStatus,
    QuarantineEventKind,
    RelationKind,
    RunStatus,
    ScopeMode,
    UnitStatus,
)
from fundtrace.contracts.errors import ExecutionError, Reason


def _validate_enum(value: object, enum_type: type, field_name: str) -> None:
    """Validate that value is an instance of the expected enum type."""
    if value is not None and not isinstance(value, enum_type):
        raise TypeError(f"{field_name} must be {enum_type.__name__}, got {type(value).__name__}: {value!r}")


# === Raw tier ===


@dataclass(frozen=True)
class EvidenceMetadata:
    """Caller-declared metadata accompanying raw evidence bytes.

    source_label is the logical identity of the evidence source
    (e.g. "grants-portal/drawdowns-2024-03.csv"). Re-uploads under the same
    label become new versions of the same object.
    """

    source_label: str
    content_type: str
    relation_kind: RelationKind | None = None

    def __post_init__(self) -> None:
        _validate_enum(self.relation_kind, RelationKind, "relation_kind")
        if not self.source_label:
            raise ValueError("source_label must be non-empty")


@dataclass(frozen=True)
class RawObject:
    """One immutable version of a raw evidence object."""

    object_id: str
    version: int
    digest: str
    size: int
    content_type: str
    source_label: str
    received_at: datetime
    relation_kind: RelationKind | None = None
    corrupt: bool = False

    def __post_init__(self) -> None:
        _validate_enum(self.relation_kind, RelationKind, "relation_kind")


@dataclass(frozen=True)
class SubmitResult:
    """Returned by the ingestion boundary."""

    object_id: str
    digest: str
    version: int


@dataclass
class IngestManifest:
    """Lifecycle of one ingestion bundle."""

    bundle_id: str
    status: ManifestStatus
    created_at: datetime
    completed_at: datetime | None = None
    error: ExecutionError | None = None
    objects: list[tuple[str, int]] = field(default_factory=list)

    def __post_init__(self) -> None:
        _validate_enum(self.status, ManifestStatus, "status")


# === Silver tier ===


@dataclass(frozen=True)
class LineagePointer:
    """Reference from a derived record back to the raw object it came from.

    row_number is None for non-tabular sources.
    """

    object_id: str
    version: int
    row_number: int | None = None


@dataclass(frozen=True)
class SourceRecord:
    """One candidate record parsed out of a raw object version.

    malformed carries the parse error for a record that could not be read
    at all; such records go straight to quarantine.
    """

    kind: RelationKind
    pointer: LineagePointer
    data: dict[str, Any]
    malformed: str | None = None

    @property
    def is_tabular(self) -> bool:
        return self.pointer.row_number is not None


@dataclass(frozen=True)
class NormalizedRow:
    """A committed silver row."""

    identity_key: str
    relation_kind: RelationKind
    business_key: str
    pointer: LineagePointer
    content: dict[str, Any]
    content_hash: str
    source_hash: str
    revision: int
    run_id: str | None
    first_committed_at: datetime
    updated_at: datetime
    bucket_date: date | None = None
    group_key: str | None = None
    amount: Decimal | None = None

    def __post_init__(self) -> None:
        _validate_enum(self.relation_kind, RelationKind, "relation_kind")


@dataclass(frozen=True)
class QuarantineRecord:
    """Current quarantine entry for an identity key."""

    identity_key: str
    record_type: str
    pointer: LineagePointer | None
    reasons: tuple[Reason, ...]
    payload: dict[str, Any] | None
    source_hash: str
    run_id: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def reason_codes(self) -> tuple[str, ...]:
        return tuple(r.code.value for r in self.reasons)


@dataclass(frozen=True)
class QuarantineEvent:
    """Append-only log entry for quarantine/release of an identity key."""

    event_id: int
    identity_key: str
    kind: QuarantineEventKind
    reasons: tuple[Reason, ...]
    run_id: str | None
    recorded_at: datetime

    def __post_init__(self) -> None:
        _validate_enum(self.kind, QuarantineEventKind, "kind")


@dataclass(frozen=True)
class TransformResult:
    """Counts produced by one transactional unit.

    accepted and quarantined count gate outcomes; unchanged counts those
    whose write was a no-op. stale records lost the precedence check and
    are counted only there.
    """

    accepted: int = 0
    quarantined: int = 0
    unchanged: int = 0
    stale: int = 0

    def __add__(self, other: TransformResult) -> TransformResult:
        return TransformResult(
            accepted=self.accepted + other.accepted,
            quarantined=self.quarantined + other.quarantined,
            unchanged=self.unchanged + other.unchanged,
            stale=self.stale + other.stale,
        )


@dataclass(frozen=True)
class ObjectTransform:
    """Latest transform outcome for one raw object version."""

    object_id: str
    version: int
    status: UnitStatus
    run_id: str | None
    accepted: int
    quarantined: int
    recorded_at: datetime
    error: ExecutionError | None = None

    def __post_init__(self) -> None:
        _validate_enum(self.status, UnitStatus, "status")


# === Gold tier ===


@dataclass(frozen=True)
class GoldScope:
    """Selects gold aggregates to recompute or read.

    metrics=None means every metric; start/end bound the day bucket (inclusive).
    """

    mode: ScopeMode = ScopeMode.FULL
    metrics: tuple[str, ...] | None = None
    start: date | None = None
    end: date | None = None

    def __post_init__(self) -> None:
        _validate_enum(self.mode, ScopeMode, "mode")
        if self.start is not None and self.end is not None and self.start > self.end:
            raise ValueError(f"scope start {self.start} is after end {self.end}")

    def covers(self, metric: str, bucket: date) -> bool:
        if self.metrics is not None and metric not in self.metrics:
            return False
        if self.start is not None and bucket < self.start:
            return False
        return not (self.end is not None and bucket > self.end)


@dataclass(frozen=True)
class GoldAggregate:
    """One curated aggregate cell."""

    metric: str
    bucket_date: date
    group_key: str
    total: Decimal
    row_count: int
    value_hash: str
    watermark: int
    computed_at: datetime

    @property
    def cell(self) -> GoldCellRef:
        return GoldCellRef(metric=self.metric, bucket_date=self.bucket_date, group_key=self.group_key)


@dataclass(frozen=True)
class GoldCellRef:
    """Address of a gold aggregate cell, used for lineage queries."""

    metric: str
    bucket_date: date
    group_key: str


# === Streaming ===


@dataclass(frozen=True)
class StreamConsumeRecord:
    """Ledger entry for one physical delivery position."""

    topic: str
    partition: int
    offset: int
    status: ClaimStatus
    attempts: int
    claimed_at: datetime
    committed_at: datetime | None = None
    object_id: str | None = None

    def __post_init__(self) -> None:
        _validate_enum(self.status, ClaimStatus, "status")


@dataclass(frozen=True)
class ClaimResult:
    """Outcome of a ledger claim attempt."""

    outcome: ClaimOutcome
    topic: str
    partition: int
    offset: int
    attempts: int

    @property
    def claimed(self) -> bool:
        return self.outcome == ClaimOutcome.CLAIMED


# === Runs ===


@dataclass(frozen=True)
class TransformScope:
    """What a transform run should (re)process.

    INCREMENTAL covers raw object versions not yet transformed plus objects
    whose rows wait in quarantine for a missing parent. FULL reprocesses the
    latest version of every object received in [since, until].
    """

    mode: ScopeMode = ScopeMode.INCREMENTAL
    since: date | None = None
    until: date | None = None
    kinds: tuple[RelationKind, ...] | None = None

    def __post_init__(self) -> None:
        _validate_enum(self.mode, ScopeMode, "mode")

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "since": self.since.isoformat() if self.since else None,
            "until": self.until.isoformat() if self.until else None,
            "kinds": [k.value for k in self.kinds] if self.kinds is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransformScope:
        return cls(
            mode=ScopeMode(data["mode"]),
            since=date.fromisoformat(data["since"]) if data["since"] else None,
            until=date.fromisoformat(data["until"]) if data["until"] else None,
            kinds=tuple(RelationKind(k) for k in data["kinds"]) if data["kinds"] is not None else None,
        )


@dataclass
class RunCounts:
    """Mutable counters carried through a run by reference."""

    units: int = 0
    failed_units: int = 0
    accepted: int = 0
    quarantined: int = 0
    unchanged: int = 0
    stale: int = 0
    gold_cells: int = 0

    def absorb(self, result: TransformResult) -> None:
        self.units += 1
        self.accepted += result.accepted
        self.quarantined += result.quarantined
        self.unchanged += result.unchanged
        self.stale += result.stale

    def to_dict(self) -> dict[str, int]:
        return {
            "units": self.units,
            "failed_units": self.failed_units,
            "accepted": self.accepted,
            "quarantined": self.quarantined,
            "unchanged": self.unchanged,
            "stale": self.stale,
            "gold_cells": self.gold_cells,
        }


@dataclass
class PipelineRun:
    """One orchestrated transformation run, passed by reference through its lifecycle."""

    run_id: str
    logical_id: str
    status: RunStatus
    attempt: int
    scope: TransformScope
    queued_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    counts: RunCounts = field(default_factory=RunCounts)
    errors: list[ExecutionError] = field(default_factory=list)
    cancel_requested: bool = False

    def __post_init__(self) -> None:
        _validate_enum(self.status, RunStatus, "status")


@dataclass(frozen=True)
class RunEvent:
    """Append-only record of a run lifecycle transition."""

    event_id: int
    run_id: str
    attempt: int
    from_status: RunStatus | None
    to_status: RunStatus
    recorded_at: datetime

    def __post_init__(self) -> None:
        _validate_enum(self.from_status, RunStatus, "from_status")
        _validate_enum(self.to_status, RunStatus, "to_status")


@dataclass(frozen=True)
class RunOutcome:
    """Returned to the orchestrator by run_transform().

    replayed is True when an already-succeeded logical run was requested
    again without force; no work was performed.
    """

    run_id: str
    logical_id: str
    status: RunStatus
    attempt: int
    counts: dict[str, int]
    errors: tuple[ExecutionError, ...] = ()
    replayed: bool = False

    def __post_init__(self) -> None:
        _validate_enum(self.status, RunStatus, "status")


# === AI evidence ===


@dataclass(frozen=True)
class DocumentChunk:
    """Byte-range chunk of a document object, addressable as a citation target."""

    chunk_id: str
    object_id: str
    version: int
    object_digest: str
    ordinal: int
    byte_start: int
    byte_end: int
    chunk_digest: str


@dataclass(frozen=True)
class FindingRef:
    """Address of a recorded finding, used for lineage queries."""

    finding_id: str


@dataclass(frozen=True)
class Finding:
    """An AI-generated finding with chunk-level lineage."""

    finding_id: str
    bundle_id: str
    rule_id: str
    extracted_fields: dict[str, Any]
    evidence_chunk_ids: tuple[str, ...]
    model_name: str
    prompt_hash: str
    content_hash: str
    recorded_at: datetime


@dataclass(frozen=True)
class FindingResult:
    """Outcome of record_finding()."""

    finding_id: str
    accepted: bool
    reasons: tuple[Reason, ...] = ()


@dataclass(frozen=True)
class ExtractionCall:
    """Run/outcome record for one call to the external evidence model."""

    call_id: str
    kind: CallKind
    model_name: str
    status: CallStatus
    attempts: int
    started_at: datetime
    completed_at: datetime | None = None
    input_hash: str | None = None
    error: ExecutionError | None = None

    def __post_init__(self) -> None:
        _validate_enum(self.kind, CallKind, "kind")
        _validate_enum(self.status, CallStatus, "status")


# === Lineage ===


@dataclass(frozen=True)
class VerifiedObject:
    """A raw object version whose digest was re-verified at resolution time."""

    object_id: str
    version: int
    source_label: str
    recorded_digest: str
    verified_digest: str


@dataclass(frozen=True)
class SilverLink:
    """One contributing silver row in a lineage chain."""

    identity_key: str
    relation_kind: RelationKind
    business_key: str
    pointer: LineagePointer
    amount: Decimal | None
    content_hash: str


@dataclass(frozen=True)
class ChunkLink:
    """One evidence chunk in a finding's lineage chain, verified by byte range."""

    chunk_id: str
    pointer: LineagePointer
    byte_start: int
    byte_end: int
    chunk_digest: str


@dataclass(frozen=True)
class LineageChain:
    """Self-certifying answer to "where did this number come from".

    consistent is True when the contributing rows recompute to the stored
    gold value (always True for findings).
    """

    target: GoldCellRef | FindingRef
    silver: tuple[SilverLink, ...]
    chunks: tuple[ChunkLink, ...]
    objects: tuple[VerifiedObject, ...]
    consistent: bool
    gold: GoldAggregate | None = None
    finding: Finding | None = None
