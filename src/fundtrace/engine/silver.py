# src/fundtrace/engine/silver.py
"""Normalization engine: raw object versions -> silver rows or quarantine.

One source object version (or one streaming message) is one transactional
unit. Inside the unit every candidate record is:

1. given a deterministic identity key (object + row number for tabular
   sources, kind + natural key otherwise)
2. evaluated by the quality gate
3. written to silver (deleting any quarantine entry for the key) or to
   quarantine (deleting any silver row for the key)

Precedence guard: each stored entry remembers (source version, source hash).
A write whose precedence is strictly lower than the stored one is stale and
skipped, so the final state does not depend on arrival order: a backfill of
an old version can never regress a row written from a newer one.

Every silver mutation that moves money between gold buckets appends a
silver_changes row in the same transaction; the gold rollup consumes them.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from typing import TYPE_CHECKING, Any

from sqlalchemy import Connection, and_, or_, select
from sqlalchemy.engine import Row

from fundtrace.contracts.enums import ReasonCode, RelationKind, ScopeMode, UnitStatus
from fundtrace.contracts.errors import ExecutionError, Reason, TransactionAbort, WarehouseIntegrityError
from fundtrace.contracts.records import (
    LineagePointer,
    NormalizedRow,
    ObjectTransform,
    RawObject,
    SourceRecord,
    TransformResult,
    TransformScope,
)
from fundtrace.contracts.relations import PROCESSING_ORDER, relation_spec
from fundtrace.core.canonical import (
    canonical_json,
    natural_identity_key,
    source_hash,
    stable_hash,
    tabular_identity_key,
)
from fundtrace.core.logging import get_logger
from fundtrace.core.warehouse._database_ops import DatabaseOps
from fundtrace.core.warehouse._helpers import now
from fundtrace.core.warehouse.database import WarehouseDB
from fundtrace.core.warehouse.repositories import NormalizedRowRepository, ObjectTransformRepository, RawObjectRepository
from fundtrace.core.warehouse.schema import (
    object_transforms_table,
    raw_objects_table,
    silver_changes_table,
    silver_rows_table,
)
from fundtrace.engine import quarantine
from fundtrace.engine.findings import chunk_document, store_chunks
from fundtrace.engine.parsing import MalformedEvidenceError, parse_message, parse_object
from fundtrace.engine.quality import Accepted, CandidateRow, GateContext, QualityGate, Quarantined, count_natural_keys
from fundtrace.engine.raw_store import RawStore, received_between

if TYPE_CHECKING:
    from fundtrace.contracts.records import PipelineRun
    from fundtrace.core.config import QualitySettings

logger = get_logger(__name__)

UNKNOWN_RECORD_TYPE = "unknown"


@dataclass(frozen=True)
class SourceBatch:
    """One transactional unit of work: the records of one raw object version.

    malformed is set when the object as a whole could not be parsed; the unit
    then quarantines a single object-level entry instead of rows.
    """

    obj: RawObject
    content: bytes
    records: tuple[SourceRecord, ...]
    malformed: str | None = None

    @classmethod
    def from_object(cls, obj: RawObject, content: bytes) -> SourceBatch:
        try:
            records = parse_object(obj, content)
        except MalformedEvidenceError as e:
            return cls(obj=obj, content=content, records=(), malformed=str(e))
        return cls(obj=obj, content=content, records=tuple(records))

    @classmethod
    def from_message(cls, kind: RelationKind, obj: RawObject, content: bytes) -> SourceBatch:
        try:
            record = parse_message(kind, obj, content)
        except MalformedEvidenceError as e:
            return cls(obj=obj, content=content, records=(), malformed=str(e))
        return cls(obj=obj, content=content, records=(record,))


def identity_key_for(record: SourceRecord) -> str:
    """Deterministic identity key of a candidate record."""
    if record.is_tabular:
        assert record.pointer.row_number is not None
        return tabular_identity_key(record.kind.value, record.pointer.object_id, record.pointer.row_number)
    raw_key = record.data.get(relation_spec(record.kind).natural_key)
    natural_key = str(raw_key).strip() if raw_key is not None else ""
    if not natural_key:
        # No business key to identify by: the message itself is the identity.
        natural_key = f"object:{record.pointer.object_id}"
    return natural_identity_key(record.kind.value, natural_key)


def object_identity_key(obj: RawObject) -> str:
    """Identity key of the object-level entry used when a whole object is malformed."""
    kind = obj.relation_kind.value if obj.relation_kind is not None else UNKNOWN_RECORD_TYPE
    return natural_identity_key(kind, f"object:{obj.object_id}")


def _precedence(version: int | None, stored_hash: str) -> tuple[int, str]:
    return (version if version is not None else 0, stored_hash)


class SilverTransform:
    """Applies source batches to silver and quarantine, one unit per transaction."""

    def __init__(
        self,
        db: WarehouseDB,
        raw_store: RawStore,
        settings: QualitySettings,
        *,
        max_chunk_bytes: int = 2000,
        gate: QualityGate | None = None,
        today: Callable[[], date] | None = None,
    ) -> None:
        self._db = db
        self._ops = DatabaseOps(db)
        self._raw = raw_store
        self._settings = settings
        self._max_chunk_bytes = max_chunk_bytes
        self._gate = gate if gate is not None else QualityGate()
        self._today = today if today is not None else (lambda: now().date())
        self._row_repo = NormalizedRowRepository()
        self._outcome_repo = ObjectTransformRepository()
        self._raw_repo = RawObjectRepository()

    # === Units ===

    def load_batch(self, obj: RawObject) -> SourceBatch:
        """Read verified bytes and parse them. Runs outside any transaction.

        Raises:
            IntegrityError: If the object version fails digest verification
        """
        return SourceBatch.from_object(obj, self._raw.read(obj))

    def transform(self, run: PipelineRun | None, batch: SourceBatch, *, conn: Connection | None = None) -> TransformResult:
        """Apply one batch as one unit.

        With conn, the unit joins the caller's transaction (the streaming path
        commits its ledger claim in the same transaction). Without it, the unit
        gets its own.

        Raises:
            TransactionAbort: If anything fails; every write of the unit is rolled back
        """
        obj = batch.obj
        run_id = run.run_id if run is not None else None
        try:
            with self._ops.joined(conn) as c:
                result = self._apply(c, batch, run_id)
                self._record_outcome(c, obj, UnitStatus.COMMITTED, run_id, result, error=None)
        except Exception as e:
            logger.error(
                "unit_failed",
                object_id=obj.object_id,
                version=obj.version,
                run_id=run_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise TransactionAbort(obj.object_id, obj.version, e) from e

        logger.info(
            "unit_committed",
            object_id=obj.object_id,
            version=obj.version,
            run_id=run_id,
            accepted=result.accepted,
            quarantined=result.quarantined,
            unchanged=result.unchanged,
            stale=result.stale,
        )
        return result

    def record_failure(self, obj: RawObject, run_id: str | None, error: ExecutionError) -> None:
        """Record a failed unit in its own transaction (the unit itself rolled back)."""
        with self._db.connection() as conn:
            self._record_outcome(conn, obj, UnitStatus.FAILED, run_id, TransformResult(), error=error)

    def _apply(self, conn: Connection, batch: SourceBatch, run_id: str | None) -> TransformResult:
        obj = batch.obj
        object_key = object_identity_key(obj)
        object_entry = quarantine.fetch_entry(conn, object_key)

        if batch.malformed is not None:
            reason = Reason(ReasonCode.MALFORMED_RECORD, {"message": batch.malformed})
            incoming = _precedence(obj.version, obj.digest)
            if object_entry is not None and incoming < _precedence(object_entry.version, object_entry.source_hash):
                return TransformResult(stale=1)
            written = quarantine.upsert_entry(
                conn,
                identity_key=object_key,
                record_type=obj.relation_kind.value if obj.relation_kind is not None else UNKNOWN_RECORD_TYPE,
                pointer=LineagePointer(obj.object_id, obj.version, None),
                reasons=(reason,),
                payload=None,
                source_hash=obj.digest,
                run_id=run_id,
                existing=object_entry,
            )
            return TransformResult(quarantined=1, unchanged=0 if written else 1)

        # A newer (or equal) version parsed: the object-level entry is obsolete.
        if object_entry is not None and (obj.version or 0) >= (object_entry.version or 0):
            quarantine.release_entry(conn, object_key, run_id, object_entry)

        if obj.relation_kind == RelationKind.DOCUMENT:
            store_chunks(conn, chunk_document(obj, batch.content, self._max_chunk_bytes))

        context = GateContext.from_settings(
            self._settings,
            as_of=self._today(),
            reference_exists=self._reference_lookup(conn),
            batch_keys=count_natural_keys(batch.records),
        )

        result = TransformResult()
        for record in batch.records:
            result = result + self._write(conn, record, self._gate.evaluate(record, context), run_id)
        return result

    @staticmethod
    def _reference_lookup(conn: Connection) -> Callable[[RelationKind, str], bool]:
        def exists(kind: RelationKind, business_key: str) -> bool:
            row = conn.execute(
                select(silver_rows_table.c.identity_key)
                .where(
                    silver_rows_table.c.relation_kind == kind.value,
                    silver_rows_table.c.business_key == business_key,
                )
                .limit(1)
            ).fetchone()
            return row is not None

        return exists

    # === Per-record write ===

    def _write(self, conn: Connection, record: SourceRecord, verdict: Accepted | Quarantined, run_id: str | None) -> TransformResult:
        identity_key = identity_key_for(record)
        incoming_hash = source_hash(record.data)
        incoming = _precedence(record.pointer.version, incoming_hash)

        silver = conn.execute(select(silver_rows_table).where(silver_rows_table.c.identity_key == identity_key).with_for_update()).fetchone()
        held = quarantine.fetch_entry(conn, identity_key)
        if silver is not None and held is not None:
            raise WarehouseIntegrityError(f"Identity key {identity_key} is in both silver and quarantine")

        stored = silver if silver is not None else held
        if stored is not None and incoming < _precedence(stored.version, stored.source_hash):
            logger.debug("stale_write_skipped", identity_key=identity_key, version=record.pointer.version)
            return TransformResult(stale=1)

        if isinstance(verdict, Accepted):
            changed = self._upsert_silver(conn, identity_key, record, verdict.row, incoming_hash, run_id, silver)
            if held is not None:
                quarantine.release_entry(conn, identity_key, run_id, held)
            return TransformResult(accepted=1, unchanged=0 if changed or held is not None else 1)

        written = quarantine.upsert_entry(
            conn,
            identity_key=identity_key,
            record_type=record.kind.value,
            pointer=record.pointer,
            reasons=verdict.reasons,
            payload=record.data,
            source_hash=incoming_hash,
            run_id=run_id,
            existing=held,
        )
        if silver is not None:
            self._delete_silver(conn, silver)
        return TransformResult(quarantined=1, unchanged=0 if written or silver is not None else 1)

    def _upsert_silver(
        self,
        conn: Connection,
        identity_key: str,
        record: SourceRecord,
        row: CandidateRow,
        incoming_hash: str,
        run_id: str | None,
        existing: Row[Any] | None,
    ) -> bool:
        content_hash = stable_hash(row.content)
        if existing is not None and existing.content_hash == content_hash:
            return False

        timestamp = now()
        values = {
            "relation_kind": row.kind.value,
            "business_key": row.business_key,
            "object_id": record.pointer.object_id,
            "version": record.pointer.version,
            "row_number": record.pointer.row_number,
            "content_json": canonical_json(row.content),
            "content_hash": content_hash,
            "source_hash": incoming_hash,
            "run_id": run_id,
            "updated_at": timestamp,
            "metric": row.metric,
            "bucket_date": row.bucket_date,
            "group_key": row.group_key,
            "amount": str(row.amount) if row.amount is not None else None,
        }
        if existing is None:
            conn.execute(silver_rows_table.insert().values(identity_key=identity_key, revision=1, first_committed_at=timestamp, **values))
        else:
            conn.execute(
                silver_rows_table.update()
                .where(silver_rows_table.c.identity_key == identity_key)
                .values(revision=existing.revision + 1, **values)
            )

        buckets = set()
        if existing is not None and existing.metric is not None:
            buckets.add((existing.metric, existing.bucket_date, existing.group_key))
        if row.metric is not None:
            buckets.add((row.metric, row.bucket_date, row.group_key))
        self._record_changes(conn, identity_key, buckets)
        return True

    def _delete_silver(self, conn: Connection, existing: Row[Any]) -> None:
        conn.execute(silver_rows_table.delete().where(silver_rows_table.c.identity_key == existing.identity_key))
        if existing.metric is not None:
            self._record_changes(conn, existing.identity_key, {(existing.metric, existing.bucket_date, existing.group_key)})
        logger.info("silver_row_withdrawn", identity_key=existing.identity_key, relation_kind=existing.relation_kind)

    @staticmethod
    def _record_changes(conn: Connection, identity_key: str, buckets: set[tuple[str, date, str]]) -> None:
        timestamp = now()
        for metric, bucket_date, group_key in sorted(buckets):
            conn.execute(
                silver_changes_table.insert().values(
                    metric=metric,
                    bucket_date=bucket_date,
                    group_key=group_key,
                    identity_key=identity_key,
                    recorded_at=timestamp,
                )
            )

    def _record_outcome(
        self,
        conn: Connection,
        obj: RawObject,
        status: UnitStatus,
        run_id: str | None,
        result: TransformResult,
        *,
        error: ExecutionError | None,
    ) -> None:
        values = {
            "status": status.value,
            "run_id": run_id,
            "accepted": result.accepted,
            "quarantined": result.quarantined,
            "recorded_at": now(),
            "error_json": json.dumps(error) if error is not None else None,
        }
        key = and_(object_transforms_table.c.object_id == obj.object_id, object_transforms_table.c.version == obj.version)
        existing = conn.execute(select(object_transforms_table.c.status).where(key)).fetchone()
        if existing is None:
            conn.execute(object_transforms_table.insert().values(object_id=obj.object_id, version=obj.version, **values))
        else:
            conn.execute(object_transforms_table.update().where(key).values(**values))

    # === Scope planning ===

    def plan(self, scope: TransformScope) -> list[RawObject]:
        """Raw object versions a run over this scope must (re)process, in processing order.

        INCREMENTAL: versions never transformed or whose last unit failed, plus
        versions holding rows that wait in quarantine for a parent entity.
        FULL: the latest version of every object received in [since, until].
        """
        if scope.mode == ScopeMode.FULL:
            units = self._raw.list_latest(since=scope.since, until=scope.until, kinds=scope.kinds)
        else:
            units = self._pending_versions(scope)

        order = {kind: index for index, kind in enumerate(PROCESSING_ORDER)}
        return sorted(
            units,
            key=lambda o: (
                order[o.relation_kind] if o.relation_kind is not None else len(order),
                o.received_at,
                o.object_id,
                o.version,
            ),
        )

    def _pending_versions(self, scope: TransformScope) -> list[RawObject]:
        awaiting = quarantine.QuarantineReader(self._db).awaiting_reference()

        outcome = object_transforms_table
        query = select(raw_objects_table).outerjoin(
            outcome,
            and_(
                outcome.c.object_id == raw_objects_table.c.object_id,
                outcome.c.version == raw_objects_table.c.version,
            ),
        )
        conditions = [outcome.c.status.is_(None), outcome.c.status == UnitStatus.FAILED.value]
        if awaiting:
            conditions.append(
                or_(*(and_(raw_objects_table.c.object_id == oid, raw_objects_table.c.version == ver) for oid, ver in awaiting))
            )
        query = query.where(or_(*conditions))
        if scope.kinds is not None:
            query = query.where(raw_objects_table.c.relation_kind.in_([k.value for k in scope.kinds]))
        query = query.where(*received_between(scope.since, scope.until))
        return [self._raw_repo.load(row) for row in self._ops.execute_fetchall(query)]

    # === Reads ===

    def get_row(self, identity_key: str, *, conn: Connection | None = None) -> NormalizedRow | None:
        row = self._ops.execute_fetchone(select(silver_rows_table).where(silver_rows_table.c.identity_key == identity_key), conn=conn)
        return self._row_repo.load(row) if row is not None else None

    def rows(self, kind: RelationKind | None = None, *, conn: Connection | None = None) -> list[NormalizedRow]:
        query = select(silver_rows_table)
        if kind is not None:
            query = query.where(silver_rows_table.c.relation_kind == kind.value)
        query = query.order_by(silver_rows_table.c.identity_key)
        return [self._row_repo.load(row) for row in self._ops.execute_fetchall(query, conn=conn)]

    def outcome(self, object_id: str, version: int, *, conn: Connection | None = None) -> ObjectTransform | None:
        row = self._ops.execute_fetchone(
            select(object_transforms_table).where(
                object_transforms_table.c.object_id == object_id,
                object_transforms_table.c.version == version,
            ),
            conn=conn,
        )
        return self._outcome_repo.load(row) if row is not None else None
