"""Shared contracts for cross-boundary data types.

All dataclasses, enums, TypedDicts and protocols that cross subsystem
boundaries are defined here.

This package is a LEAF MODULE with no outbound dependencies to core/engine.
Settings classes are NOT re-exported here - import them from
fundtrace.core.config.
"""

from fundtrace.contracts.blob_store import BlobStore
from fundtrace.contracts.enums import (
    CallKind,
    CallStatus,
    ClaimOutcome,
    ClaimStatus,
    Delivery,
    ManifestStatus,
    QuarantineEventKind,
    ReasonCode,
    RelationKind,
    RunStatus,
    ScopeMode,
    UnitStatus,
)
from fundtrace.contracts.errors import (
    AlreadyRunningError,
    ConcurrentRunConflict,
    DuplicateDeliveryError,
    ExecutionError,
    IntegrityError,
    InvalidRunTransition,
    Reason,
    ReferenceNotReadyError,
    TransactionAbort,
    ValidationFailure,
    WarehouseIntegrityError,
)
from fundtrace.contracts.evidence_model import EvidenceModel, EvidenceModelError
from fundtrace.contracts.records import (
    ChunkLink,
    ClaimResult,
    DocumentChunk,
    EvidenceMetadata,
    ExtractionCall,
    Finding,
    FindingRef,
    FindingResult,
    GoldAggregate,
    GoldCellRef,
    GoldScope,
    IngestManifest,
    LineageChain,
    LineagePointer,
    NormalizedRow,
    ObjectTransform,
    PipelineRun,
    QuarantineEvent,
    QuarantineRecord,
    RawObject,
    RunCounts,
    RunEvent,
    RunOutcome,
    SilverLink,
    SourceRecord,
    StreamConsumeRecord,
    SubmitResult,
    TransformResult,
    TransformScope,
    VerifiedObject,
)
from fundtrace.contracts.relations import (
    METRICS,
    PROCESSING_ORDER,
    RELATIONS,
    GoldMetric,
    RelationSpec,
    relation_spec,
)

__all__ = [
    "METRICS",
    "PROCESSING_ORDER",
    "RELATIONS",
    "AlreadyRunningError",
    "BlobStore",
    "CallKind",
    "CallStatus",
    "ChunkLink",
    "ClaimOutcome",
    "ClaimResult",
    "ClaimStatus",
    "ConcurrentRunConflict",
    "Delivery",
    "DocumentChunk",
    "DuplicateDeliveryError",
    "EvidenceMetadata",
    "EvidenceModel",
    "EvidenceModelError",
    "ExecutionError",
    "ExtractionCall",
    "Finding",
    "FindingRef",
    "FindingResult",
    "GoldAggregate",
    "GoldCellRef",
    "GoldMetric",
    "GoldScope",
    "IngestManifest",
    "IntegrityError",
    "InvalidRunTransition",
    "LineageChain",
    "LineagePointer",
    "ManifestStatus",
    "NormalizedRow",
    "ObjectTransform",
    "PipelineRun",
    "QuarantineEvent",
    "QuarantineEventKind",
    "QuarantineRecord",
    "RawObject",
    "Reason",
    "ReasonCode",
    "ReferenceNotReadyError",
    "RelationKind",
    "RelationSpec",
    "RunCounts",
    "RunEvent",
    "RunOutcome",
    "RunStatus",
    "ScopeMode",
    "SilverLink",
    "SourceRecord",
    "StreamConsumeRecord",
    "SubmitResult",
    "TransactionAbort",
    "TransformResult",
    "TransformScope",
    "UnitStatus",
    "ValidationFailure",
    "VerifiedObject",
    "WarehouseIntegrityError",
    "relation_spec",
]
