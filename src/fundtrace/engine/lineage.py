# src/fundtrace/engine/lineage.py
"""Lineage resolution: where did this number (or finding) come from?

Resolution reads the chain inside one warehouse transaction so every link is
from the same committed state, then re-verifies the raw bytes outside it.
The answer is self-certifying: each raw object carries its live recomputed
digest, and a gold chain says whether its rows still sum to the stored value.

Corrupt evidence raises IntegrityError. A chain is never built on bytes
that failed verification.
"""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import Connection

from fundtrace.contracts.errors import IntegrityError
from fundtrace.contracts.records import (
    ChunkLink,
    DocumentChunk,
    FindingRef,
    GoldCellRef,
    LineageChain,
    LineagePointer,
    NormalizedRow,
    RawObject,
    SilverLink,
    VerifiedObject,
)
from fundtrace.core.canonical import content_digest
from fundtrace.core.logging import get_logger
from fundtrace.core.warehouse.database import WarehouseDB
from fundtrace.engine.findings import FindingStore
from fundtrace.engine.gold import GoldRollup
from fundtrace.engine.raw_store import RawStore

logger = get_logger(__name__)


class LineageResolver:
    """Walks gold cells and findings back to verified raw bytes."""

    def __init__(self, db: WarehouseDB, raw_store: RawStore, gold: GoldRollup, findings: FindingStore) -> None:
        self._db = db
        self._raw = raw_store
        self._gold = gold
        self._findings = findings

    def resolve(self, ref: GoldCellRef | FindingRef) -> LineageChain:
        """Resolve a gold cell or finding to its verified chain of custody.

        Raises:
            KeyError: If the cell or finding does not exist
            IntegrityError: If any raw object in the chain fails verification
        """
        if isinstance(ref, FindingRef):
            return self._resolve_finding(ref)
        return self._resolve_gold(ref)

    def _resolve_gold(self, ref: GoldCellRef) -> LineageChain:
        with self._db.connection() as conn:
            aggregate = self._gold.get_cell(ref, conn=conn)
            if aggregate is None:
                raise KeyError(f"No gold aggregate for {ref.metric} {ref.bucket_date.isoformat()} {ref.group_key!r}")
            rows = self._gold.contributing_rows(ref, conn=conn)
            objects = self._describe(conn, [row.pointer for row in rows])

        verified = tuple(self._verify(obj) for obj in objects)
        total = sum((row.amount for row in rows if row.amount is not None), Decimal(0))
        consistent = total == aggregate.total and len(rows) == aggregate.row_count
        if not consistent:
            logger.warning(
                "lineage_inconsistent",
                metric=ref.metric,
                bucket_date=ref.bucket_date.isoformat(),
                group_key=ref.group_key,
                stored_total=str(aggregate.total),
                recomputed_total=str(total),
            )

        return LineageChain(
            target=ref,
            silver=tuple(_silver_link(row) for row in rows),
            chunks=(),
            objects=verified,
            consistent=consistent,
            gold=aggregate,
        )

    def _resolve_finding(self, ref: FindingRef) -> LineageChain:
        with self._db.connection() as conn:
            finding = self._findings.get(ref.finding_id, conn=conn)
            chunks = [self._findings.get_chunk(chunk_id, conn=conn) for chunk_id in finding.evidence_chunk_ids]
            objects = self._describe(conn, [LineagePointer(c.object_id, c.version) for c in chunks])

        contents = {(obj.object_id, obj.version): self._raw.read(obj) for obj in objects}
        for chunk in chunks:
            self._verify_chunk(chunk, contents[(chunk.object_id, chunk.version)])

        return LineageChain(
            target=ref,
            silver=(),
            chunks=tuple(
                ChunkLink(
                    chunk_id=c.chunk_id,
                    pointer=LineagePointer(c.object_id, c.version),
                    byte_start=c.byte_start,
                    byte_end=c.byte_end,
                    chunk_digest=c.chunk_digest,
                )
                for c in chunks
            ),
            objects=tuple(
                VerifiedObject(
                    object_id=obj.object_id,
                    version=obj.version,
                    source_label=obj.source_label,
                    recorded_digest=obj.digest,
                    verified_digest=content_digest(contents[(obj.object_id, obj.version)]),
                )
                for obj in objects
            ),
            consistent=True,
            finding=finding,
        )

    def _describe(self, conn: Connection, pointers: list[LineagePointer]) -> list[RawObject]:
        seen = dict.fromkeys((p.object_id, p.version) for p in pointers)
        return [self._raw.describe(object_id, version, conn=conn) for object_id, version in seen]

    def _verify(self, obj: RawObject) -> VerifiedObject:
        live = content_digest(self._raw.read(obj))
        return VerifiedObject(
            object_id=obj.object_id,
            version=obj.version,
            source_label=obj.source_label,
            recorded_digest=obj.digest,
            verified_digest=live,
        )

    @staticmethod
    def _verify_chunk(chunk: DocumentChunk, content: bytes) -> None:
        if content_digest(content) != chunk.object_digest:
            raise IntegrityError(
                f"Chunk {chunk.chunk_id} cites digest {chunk.object_digest} but object {chunk.object_id} "
                f"version {chunk.version} holds {content_digest(content)}",
                object_id=chunk.object_id,
                version=chunk.version,
            )
        if content_digest(content[chunk.byte_start : chunk.byte_end]) != chunk.chunk_digest:
            raise IntegrityError(
                f"Chunk {chunk.chunk_id} bytes [{chunk.byte_start}, {chunk.byte_end}) do not match the recorded chunk digest",
                object_id=chunk.object_id,
                version=chunk.version,
            )


def _silver_link(row: NormalizedRow) -> SilverLink:
    return SilverLink(
        identity_key=row.identity_key,
        relation_kind=row.relation_kind,
        business_key=row.business_key,
        pointer=row.pointer,
        amount=row.amount,
        content_hash=row.content_hash,
    )
