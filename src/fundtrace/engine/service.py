# src/fundtrace/engine/service.py
"""EvidenceEngine: the boundary the orchestrator, broker client and query
layer talk to.

Recovery points live here and only here:
- a failed transform unit is recorded on the run and the run continues
- a failed streaming unit is NACKed so the broker redelivers it
- a duplicate delivery of a committed offset is ACKed with no side effects

Everything else propagates.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import date
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError

from fundtrace.contracts.blob_store import BlobStore
from fundtrace.contracts.enums import Delivery, RelationKind, RunStatus, ScopeMode
from fundtrace.contracts.errors import DuplicateDeliveryError, ExecutionError, IntegrityError, TransactionAbort
from fundtrace.contracts.evidence_model import EvidenceModel
from fundtrace.contracts.records import (
    DocumentChunk,
    EvidenceMetadata,
    FindingRef,
    FindingResult,
    GoldAggregate,
    GoldCellRef,
    GoldScope,
    IngestManifest,
    LineageChain,
    PipelineRun,
    RawObject,
    RunOutcome,
    SubmitResult,
    TransformScope,
)
from fundtrace.core.blob_store import FilesystemBlobStore
from fundtrace.core.config import FundtraceSettings
from fundtrace.core.logging import bind_context, get_logger
from fundtrace.core.warehouse.database import WarehouseDB
from fundtrace.engine.extraction import ExtractionRunner
from fundtrace.engine.findings import FindingStore
from fundtrace.engine.gold import GoldRollup
from fundtrace.engine.ledger import StreamLedger
from fundtrace.engine.lineage import LineageResolver
from fundtrace.engine.quarantine import QuarantineReader
from fundtrace.engine.raw_store import RawStore
from fundtrace.engine.retry import RetryConfig, RetryManager
from fundtrace.engine.runs import RunTracker
from fundtrace.engine.silver import SilverTransform, SourceBatch

logger = get_logger(__name__)


def stream_label(topic: str, partition: int, offset: int) -> str:
    """Source label of the raw object holding one streaming message."""
    return f"stream/{topic}/{partition}/{offset}"


def _unit_error(obj_id: str, version: int, error: BaseException) -> ExecutionError:
    return {"exception": str(error), "type": type(error).__name__, "object_id": obj_id, "version": version}


class EvidenceEngine:
    """Evidence transformation and lineage engine."""

    def __init__(
        self,
        db: WarehouseDB,
        blobs: BlobStore,
        settings: FundtraceSettings | None = None,
        *,
        model: EvidenceModel | None = None,
        retry_manager: RetryManager | None = None,
        today: Callable[[], date] | None = None,
    ) -> None:
        self._db = db
        self._settings = settings if settings is not None else FundtraceSettings()
        self.raw_store = RawStore(db, blobs)
        self.ledger = StreamLedger(db)
        self.silver = SilverTransform(
            db,
            self.raw_store,
            self._settings.quality,
            max_chunk_bytes=self._settings.chunking.max_chunk_bytes,
            today=today,
        )
        self.gold = GoldRollup(db)
        self.runs = RunTracker(db)
        self.findings = FindingStore(db)
        self.quarantine = QuarantineReader(db)
        self.lineage = LineageResolver(db, self.raw_store, self.gold, self.findings)
        self._extraction: ExtractionRunner | None = None
        if model is not None:
            manager = retry_manager if retry_manager is not None else RetryManager(RetryConfig.from_settings(self._settings.retry))
            self._extraction = ExtractionRunner(db, self.raw_store, self.findings, model, manager)

    @classmethod
    def from_settings(cls, settings: FundtraceSettings, *, model: EvidenceModel | None = None) -> EvidenceEngine:
        """Open the configured warehouse and blob store."""
        db = WarehouseDB.from_settings(settings.warehouse)
        blobs = FilesystemBlobStore(settings.raw_store.base_path)
        return cls(db, blobs, settings, model=model)

    @property
    def db(self) -> WarehouseDB:
        return self._db

    @property
    def settings(self) -> FundtraceSettings:
        return self._settings

    @property
    def extraction(self) -> ExtractionRunner:
        """The extraction runner.

        Raises:
            RuntimeError: If the engine was built without an evidence model
        """
        if self._extraction is None:
            raise RuntimeError("No evidence model configured; pass model= to EvidenceEngine")
        return self._extraction

    def close(self) -> None:
        self._db.close()

    # === Ingestion ===

    def submit_evidence(self, bundle_id: str, content: bytes, metadata: EvidenceMetadata) -> SubmitResult:
        """Store raw evidence under an ingestion bundle."""
        obj = self.raw_store.submit(bundle_id, content, metadata)
        logger.info(
            "evidence_submitted",
            bundle_id=bundle_id,
            object_id=obj.object_id,
            version=obj.version,
            digest=obj.digest,
            relation_kind=obj.relation_kind.value if obj.relation_kind else None,
        )
        return SubmitResult(object_id=obj.object_id, digest=obj.digest, version=obj.version)

    def get_manifest_status(self, bundle_id: str) -> IngestManifest:
        """Raises KeyError for unknown bundles."""
        return self.raw_store.manifest(bundle_id)

    # === Batch runs ===

    def run_transform(self, logical_id: str, scope: TransformScope | None = None, *, force: bool = False) -> RunOutcome:
        """Run the silver transform (and incremental gold rollup) for a logical run.

        Safe to repeat: a logical run that already succeeded is replayed
        without doing any work unless force is set.

        Raises:
            ConcurrentRunConflict: If the same logical run is currently running
        """
        scope = scope if scope is not None else TransformScope()
        run = self.runs.start(logical_id, scope, force=force)
        if run.status == RunStatus.SUCCEEDED:
            return self._outcome(run, replayed=True)
        with bind_context(run_id=run.run_id, logical_id=logical_id):
            return self._execute(run, scope)

    def _execute(self, run: PipelineRun, scope: TransformScope) -> RunOutcome:
        errors: list[ExecutionError] = []
        cancelled = False
        try:
            for obj in self.silver.plan(scope):
                if self.runs.is_cancel_requested(run):
                    cancelled = True
                    logger.info("run_cancelled")
                    break
                try:
                    batch = self.silver.load_batch(obj)
                    run.counts.absorb(self.silver.transform(run, batch))
                except IntegrityError as e:
                    error = _unit_error(obj.object_id, obj.version, e)
                    self.silver.record_failure(obj, run.run_id, error)
                    run.counts.failed_units += 1
                    errors.append(error)
                except TransactionAbort as e:
                    error = e.to_error()
                    self.silver.record_failure(obj, run.run_id, error)
                    run.counts.failed_units += 1
                    errors.append(error)

            if self._settings.rollup.after_run:
                run.counts.gold_cells = len(self.gold.recompute(GoldScope(mode=ScopeMode.INCREMENTAL)))
        except Exception as e:
            errors.append({"exception": str(e), "type": type(e).__name__})
            self.runs.complete(run, RunStatus.FAILED, errors=errors)
            raise

        if cancelled:
            status = RunStatus.CANCELLED
        elif errors:
            status = RunStatus.FAILED
        else:
            status = RunStatus.SUCCEEDED
        return self._outcome(self.runs.complete(run, status, errors=errors))

    @staticmethod
    def _outcome(run: PipelineRun, *, replayed: bool = False) -> RunOutcome:
        return RunOutcome(
            run_id=run.run_id,
            logical_id=run.logical_id,
            status=run.status,
            attempt=run.attempt,
            counts=run.counts.to_dict(),
            errors=tuple(run.errors),
            replayed=replayed,
        )

    def cancel_run(self, run_id: str) -> None:
        self.runs.request_cancel(run_id)

    # === Streaming ===

    def on_message(self, topic: str, partition: int, offset: int, payload: bytes) -> Delivery:
        """Process one delivered message with at-most-once effects.

        Claim, raw storage, silver/quarantine writes and the ledger commit
        happen in one transaction: either all of them are visible or none.

        Returns:
            ACK when the message is processed (or was already processed),
            NACK when the unit rolled back and the broker should redeliver
        """
        log = logger.bind(topic=topic, partition=partition, offset=offset)
        kind = self._settings.streaming.topics.get(topic)
        try:
            self.ledger.ensure_not_committed(topic, partition, offset)
            with self._db.connection() as conn:
                claim = self.ledger.try_claim(topic, partition, offset, conn=conn)
                if not claim.claimed:
                    raise DuplicateDeliveryError(topic, partition, offset)
                obj = self.raw_store.put(
                    payload,
                    EvidenceMetadata(stream_label(topic, partition, offset), "application/json", kind),
                    conn=conn,
                )
                batch = self._message_batch(topic, kind, obj, payload)
                result = self.silver.transform(None, batch, conn=conn)
                self.ledger.commit(claim, conn=conn, object_id=obj.object_id)
        except DuplicateDeliveryError:
            log.info("duplicate_delivery")
            return Delivery.ACK
        except (TransactionAbort, IntegrityError, SQLAlchemyError) as e:
            log.warning("message_nacked", error=str(e), error_type=type(e).__name__)
            return Delivery.NACK

        log.info(
            "message_committed",
            object_id=obj.object_id,
            attempts=claim.attempts,
            accepted=result.accepted,
            quarantined=result.quarantined,
        )
        if self._settings.streaming.rollup_on_message:
            self._rollup_after_message(log)
        return Delivery.ACK

    @staticmethod
    def _message_batch(topic: str, kind: RelationKind | None, obj: RawObject, payload: bytes) -> SourceBatch:
        if kind is None:
            return SourceBatch(obj=obj, content=payload, records=(), malformed=f"Unknown topic: {topic!r}")
        return SourceBatch.from_message(kind, obj, payload)

    def _rollup_after_message(self, log: structlog.stdlib.BoundLogger) -> None:
        # The message is committed; a failed rollup leaves its changes in the log for the next pass.
        try:
            self.gold.recompute(GoldScope(mode=ScopeMode.INCREMENTAL))
        except SQLAlchemyError as e:
            log.warning("rollup_deferred", error=str(e), error_type=type(e).__name__)

    # === Queries ===

    def get_gold_aggregate(self, scope: GoldScope | None = None) -> list[GoldAggregate]:
        return self.gold.get(scope if scope is not None else GoldScope())

    def recompute_gold(self, scope: GoldScope) -> list[GoldAggregate]:
        return self.gold.recompute(scope)

    def resolve_lineage(self, ref: GoldCellRef | FindingRef) -> LineageChain:
        """Raises KeyError for unknown refs and IntegrityError for corrupt evidence."""
        return self.lineage.resolve(ref)

    def verify(self, object_id: str, version: int | None = None) -> str:
        """Re-verify stored bytes; returns the live digest."""
        return self.raw_store.verify(object_id, version)

    # === AI evidence ===

    def record_finding(
        self,
        bundle_id: str,
        rule_id: str,
        extracted_fields: dict[str, Any],
        evidence_chunk_ids: list[str] | tuple[str, ...],
        model_name: str,
        prompt_hash: str,
    ) -> FindingResult:
        result = self.findings.record(bundle_id, rule_id, extracted_fields, evidence_chunk_ids, model_name, prompt_hash)
        if not result.accepted:
            logger.info("finding_quarantined", finding_id=result.finding_id, reasons=[r.code.value for r in result.reasons])
        return result

    def list_chunks(self, object_id: str, version: int | None = None) -> list[DocumentChunk]:
        return self.findings.list_chunks(object_id, version)
