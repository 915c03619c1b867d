"""Repository layer for warehouse records.

Handles the seam between SQLAlchemy rows (strings) and domain objects
(strict enum types). This is NOT a trust boundary - if the warehouse
has bad data, we crash. That's intentional: the warehouse is OUR data.
"""

import json
from decimal import Decimal
from typing import Any

from sqlalchemy.engine import Row as SARow

from fundtrace.contracts.enums import (
    CallKind,
    CallStatus,
    ClaimStatus,
    ManifestStatus,
    QuarantineEventKind,
    RelationKind,
    RunStatus,
    UnitStatus,
)
from fundtrace.contracts.errors import Reason
from fundtrace.contracts.records import (
    DocumentChunk,
    ExtractionCall,
    Finding,
    GoldAggregate,
    IngestManifest,
    LineagePointer,
    NormalizedRow,
    ObjectTransform,
    PipelineRun,
    QuarantineEvent,
    QuarantineRecord,
    RawObject,
    RunCounts,
    RunEvent,
    StreamConsumeRecord,
    TransformScope,
)


def _load_reasons(reasons_json: str) -> tuple[Reason, ...]:
    parsed = json.loads(reasons_json)
    if type(parsed) is not list:
        raise ValueError(f"reasons_json must decode to list, got {type(parsed).__name__}")
    return tuple(Reason.from_dict(item) for item in parsed)


class RawObjectRepository:
    """Repository for RawObject records."""

    def load(self, row: SARow[Any]) -> RawObject:
        return RawObject(
            object_id=row.object_id,
            version=row.version,
            digest=row.digest,
            size=row.size,
            content_type=row.content_type,
            source_label=row.source_label,
            received_at=row.received_at,
            # Use explicit is not None check - empty string should raise, not become None
            relation_kind=RelationKind(row.relation_kind) if row.relation_kind is not None else None,
            corrupt=bool(row.corrupt),
        )


class IngestManifestRepository:
    """Repository for IngestManifest records."""

    def load(self, row: SARow[Any], objects: list[tuple[str, int]]) -> IngestManifest:
        return IngestManifest(
            bundle_id=row.bundle_id,
            status=ManifestStatus(row.status),
            created_at=row.created_at,
            completed_at=row.completed_at,
            error=json.loads(row.error_json) if row.error_json is not None else None,
            objects=objects,
        )


class NormalizedRowRepository:
    """Repository for silver rows."""

    def load(self, row: SARow[Any]) -> NormalizedRow:
        return NormalizedRow(
            identity_key=row.identity_key,
            relation_kind=RelationKind(row.relation_kind),
            business_key=row.business_key,
            pointer=LineagePointer(row.object_id, row.version, row.row_number),
            content=json.loads(row.content_json),
            content_hash=row.content_hash,
            source_hash=row.source_hash,
            revision=row.revision,
            run_id=row.run_id,
            first_committed_at=row.first_committed_at,
            updated_at=row.updated_at,
            bucket_date=row.bucket_date,
            group_key=row.group_key,
            amount=Decimal(row.amount) if row.amount is not None else None,
        )


class QuarantineRecordRepository:
    """Repository for current quarantine entries."""

    def load(self, row: SARow[Any]) -> QuarantineRecord:
        pointer = LineagePointer(row.object_id, row.version, row.row_number) if row.object_id is not None else None
        return QuarantineRecord(
            identity_key=row.identity_key,
            record_type=row.record_type,
            pointer=pointer,
            reasons=_load_reasons(row.reasons_json),
            payload=json.loads(row.payload_json) if row.payload_json is not None else None,
            source_hash=row.source_hash,
            run_id=row.run_id,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


class QuarantineEventRepository:
    """Repository for the quarantine event log."""

    def load(self, row: SARow[Any]) -> QuarantineEvent:
        return QuarantineEvent(
            event_id=row.event_id,
            identity_key=row.identity_key,
            kind=QuarantineEventKind(row.kind),
            reasons=_load_reasons(row.reasons_json),
            run_id=row.run_id,
            recorded_at=row.recorded_at,
        )


class ObjectTransformRepository:
    """Repository for per-version transform outcomes."""

    def load(self, row: SARow[Any]) -> ObjectTransform:
        return ObjectTransform(
            object_id=row.object_id,
            version=row.version,
            status=UnitStatus(row.status),
            run_id=row.run_id,
            accepted=row.accepted,
            quarantined=row.quarantined,
            recorded_at=row.recorded_at,
            error=json.loads(row.error_json) if row.error_json is not None else None,
        )


class GoldAggregateRepository:
    """Repository for gold aggregate cells."""

    def load(self, row: SARow[Any]) -> GoldAggregate:
        return GoldAggregate(
            metric=row.metric,
            bucket_date=row.bucket_date,
            group_key=row.group_key,
            total=Decimal(row.total),
            row_count=row.row_count,
            value_hash=row.value_hash,
            watermark=row.watermark,
            computed_at=row.computed_at,
        )


class StreamConsumeRepository:
    """Repository for stream ledger entries."""

    def load(self, row: SARow[Any]) -> StreamConsumeRecord:
        return StreamConsumeRecord(
            topic=row.topic,
            partition=row.partition,
            offset=row.offset,
            status=ClaimStatus(row.status),
            attempts=row.attempts,
            claimed_at=row.claimed_at,
            committed_at=row.committed_at,
            object_id=row.object_id,
        )


class PipelineRunRepository:
    """Repository for PipelineRun records."""

    def load(self, row: SARow[Any]) -> PipelineRun:
        counts = json.loads(row.counts_json)
        return PipelineRun(
            run_id=row.run_id,
            logical_id=row.logical_id,
            status=RunStatus(row.status),
            attempt=row.attempt,
            scope=TransformScope.from_dict(json.loads(row.scope_json)),
            queued_at=row.queued_at,
            started_at=row.started_at,
            completed_at=row.completed_at,
            counts=RunCounts(**counts),
            errors=json.loads(row.errors_json),
            cancel_requested=bool(row.cancel_requested),
        )


class RunEventRepository:
    """Repository for the run transition log."""

    def load(self, row: SARow[Any]) -> RunEvent:
        return RunEvent(
            event_id=row.event_id,
            run_id=row.run_id,
            attempt=row.attempt,
            from_status=RunStatus(row.from_status) if row.from_status is not None else None,
            to_status=RunStatus(row.to_status),
            recorded_at=row.recorded_at,
        )


class DocumentChunkRepository:
    """Repository for document chunks."""

    def load(self, row: SARow[Any]) -> DocumentChunk:
        return DocumentChunk(
            chunk_id=row.chunk_id,
            object_id=row.object_id,
            version=row.version,
            object_digest=row.object_digest,
            ordinal=row.ordinal,
            byte_start=row.byte_start,
            byte_end=row.byte_end,
            chunk_digest=row.chunk_digest,
        )


class FindingRepository:
    """Repository for AI findings."""

    def load(self, row: SARow[Any], chunk_ids: tuple[str, ...]) -> Finding:
        return Finding(
            finding_id=row.finding_id,
            bundle_id=row.bundle_id,
            rule_id=row.rule_id,
            extracted_fields=json.loads(row.extracted_json),
            evidence_chunk_ids=chunk_ids,
            model_name=row.model_name,
            prompt_hash=row.prompt_hash,
            content_hash=row.content_hash,
            recorded_at=row.recorded_at,
        )


class ExtractionCallRepository:
    """Repository for extraction call outcomes."""

    def load(self, row: SARow[Any]) -> ExtractionCall:
        return ExtractionCall(
            call_id=row.call_id,
            kind=CallKind(row.kind),
            model_name=row.model_name,
            status=CallStatus(row.status),
            attempts=row.attempts,
            started_at=row.started_at,
            completed_at=row.completed_at,
            input_hash=row.input_hash,
            error=json.loads(row.error_json) if row.error_json is not None else None,
        )
