# src/fundtrace/engine/findings.py
"""Document chunks and AI findings.

Document objects are cut into byte-range chunks when they are transformed.
Chunks are the citation targets external extraction services attach findings
to; each carries the digest of its own bytes and of the whole object version,
so a finding can be verified down to the exact byte range it cites.

Findings are stored with the same discipline as silver rows: a deterministic
identity key, idempotent writes, and quarantine (never silent drops) when the
cited evidence does not exist.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from sqlalchemy import Connection, select

from fundtrace.contracts.enums import ReasonCode
from fundtrace.contracts.errors import Reason
from fundtrace.contracts.records import DocumentChunk, Finding, FindingResult, RawObject
from fundtrace.core.canonical import canonical_json, source_hash, stable_hash
from fundtrace.core.logging import get_logger
from fundtrace.core.warehouse._database_ops import DatabaseOps
from fundtrace.core.warehouse._helpers import now
from fundtrace.core.warehouse.database import WarehouseDB
from fundtrace.core.warehouse.repositories import DocumentChunkRepository, FindingRepository
from fundtrace.core.warehouse.schema import (
    document_chunks_table,
    finding_evidence_table,
    findings_table,
)
from fundtrace.engine import quarantine

logger = get_logger(__name__)

FINDING_RECORD_TYPE = "finding"


def chunk_document(obj: RawObject, content: bytes, max_bytes: int) -> list[DocumentChunk]:
    """Cut verified document bytes into byte ranges of at most max_bytes.

    A chunk ends after the last newline inside its window when there is one,
    so chunks follow line structure where the document has it.
    """
    chunks: list[DocumentChunk] = []
    start = 0
    while start < len(content):
        end = min(start + max_bytes, len(content))
        if end < len(content):
            cut = content.rfind(b"\n", start, end)
            if cut > start:
                end = cut + 1
        chunk_id = stable_hash(
            {
                "object_id": obj.object_id,
                "version": obj.version,
                "digest": obj.digest,
                "byte_start": start,
                "byte_end": end,
            }
        )
        chunks.append(
            DocumentChunk(
                chunk_id=chunk_id,
                object_id=obj.object_id,
                version=obj.version,
                object_digest=obj.digest,
                ordinal=len(chunks),
                byte_start=start,
                byte_end=end,
                chunk_digest=hashlib.sha256(content[start:end]).hexdigest(),
            )
        )
        start = end
    return chunks


def store_chunks(conn: Connection, chunks: list[DocumentChunk]) -> int:
    """Insert chunks not yet recorded; returns how many were new."""
    if not chunks:
        return 0
    known = set(
        conn.execute(select(document_chunks_table.c.chunk_id).where(document_chunks_table.c.chunk_id.in_([c.chunk_id for c in chunks]))).scalars()
    )
    fresh = [c for c in chunks if c.chunk_id not in known]
    for chunk in fresh:
        conn.execute(
            document_chunks_table.insert().values(
                chunk_id=chunk.chunk_id,
                object_id=chunk.object_id,
                version=chunk.version,
                object_digest=chunk.object_digest,
                ordinal=chunk.ordinal,
                byte_start=chunk.byte_start,
                byte_end=chunk.byte_end,
                chunk_digest=chunk.chunk_digest,
            )
        )
    return len(fresh)


def finding_identity(bundle_id: str, rule_id: str, evidence_chunk_ids: tuple[str, ...], model_name: str, prompt_hash: str) -> str:
    return stable_hash(
        {
            "bundle_id": bundle_id,
            "rule_id": rule_id,
            "evidence_chunk_ids": list(evidence_chunk_ids),
            "model_name": model_name,
            "prompt_hash": prompt_hash,
        }
    )


class FindingStore:
    """Chunk lookups and idempotent finding writes."""

    def __init__(self, db: WarehouseDB) -> None:
        self._db = db
        self._ops = DatabaseOps(db)
        self._chunk_repo = DocumentChunkRepository()
        self._finding_repo = FindingRepository()

    # === Chunks ===

    def list_chunks(self, object_id: str, version: int | None = None, *, conn: Connection | None = None) -> list[DocumentChunk]:
        """Chunks of an object version (latest chunked version when version is None)."""
        with self._ops.joined(conn) as c:
            if version is None:
                version = c.execute(
                    select(document_chunks_table.c.version)
                    .where(document_chunks_table.c.object_id == object_id)
                    .order_by(document_chunks_table.c.version.desc())
                    .limit(1)
                ).scalar()
                if version is None:
                    return []
            rows = c.execute(
                select(document_chunks_table)
                .where(document_chunks_table.c.object_id == object_id, document_chunks_table.c.version == version)
                .order_by(document_chunks_table.c.ordinal)
            ).fetchall()
        return [self._chunk_repo.load(row) for row in rows]

    def get_chunk(self, chunk_id: str, *, conn: Connection | None = None) -> DocumentChunk:
        """Raises KeyError for unknown chunks."""
        row = self._ops.execute_fetchone(select(document_chunks_table).where(document_chunks_table.c.chunk_id == chunk_id), conn=conn)
        if row is None:
            raise KeyError(f"Unknown chunk: {chunk_id}")
        return self._chunk_repo.load(row)

    # === Findings ===

    def get(self, finding_id: str, *, conn: Connection | None = None) -> Finding:
        """Raises KeyError for unknown (or quarantined) findings."""
        with self._ops.joined(conn) as c:
            row = c.execute(select(findings_table).where(findings_table.c.finding_id == finding_id)).fetchone()
            if row is None:
                raise KeyError(f"Unknown finding: {finding_id}")
            chunk_ids = tuple(
                c.execute(
                    select(finding_evidence_table.c.chunk_id)
                    .where(finding_evidence_table.c.finding_id == finding_id)
                    .order_by(finding_evidence_table.c.ordinal)
                ).scalars()
            )
        return self._finding_repo.load(row, chunk_ids)

    def record(
        self,
        bundle_id: str,
        rule_id: str,
        extracted_fields: dict[str, Any],
        evidence_chunk_ids: tuple[str, ...] | list[str],
        model_name: str,
        prompt_hash: str,
        *,
        conn: Connection | None = None,
    ) -> FindingResult:
        """Store a finding with its evidence chunks, or quarantine it.

        The finding is keyed by (bundle, rule, cited chunks, model, prompt):
        recording the same finding again is a no-op, and a re-extraction
        with different fields replaces the stored fields.
        """
        chunk_ids = tuple(evidence_chunk_ids)
        finding_id = finding_identity(bundle_id, rule_id, chunk_ids, model_name, prompt_hash)
        payload = {
            "bundle_id": bundle_id,
            "rule_id": rule_id,
            "extracted_fields": extracted_fields,
            "evidence_chunk_ids": list(chunk_ids),
            "model_name": model_name,
            "prompt_hash": prompt_hash,
        }
        content_hash = source_hash(extracted_fields)

        with self._ops.joined(conn) as c:
            reasons = self._check(c, extracted_fields, chunk_ids)
            existing_q = quarantine.fetch_entry(c, finding_id)

            if reasons:
                quarantine.upsert_entry(
                    c,
                    identity_key=finding_id,
                    record_type=FINDING_RECORD_TYPE,
                    pointer=None,
                    reasons=reasons,
                    payload=payload,
                    source_hash=content_hash,
                    run_id=None,
                    existing=existing_q,
                )
                self._withdraw(c, finding_id)
                return FindingResult(finding_id=finding_id, accepted=False, reasons=reasons)

            existing = c.execute(select(findings_table.c.content_hash).where(findings_table.c.finding_id == finding_id)).fetchone()
            extracted_json = canonical_json(extracted_fields)
            if existing is None:
                c.execute(
                    findings_table.insert().values(
                        finding_id=finding_id,
                        bundle_id=bundle_id,
                        rule_id=rule_id,
                        extracted_json=extracted_json,
                        model_name=model_name,
                        prompt_hash=prompt_hash,
                        content_hash=content_hash,
                        recorded_at=now(),
                    )
                )
                for ordinal, chunk_id in enumerate(chunk_ids):
                    c.execute(finding_evidence_table.insert().values(finding_id=finding_id, ordinal=ordinal, chunk_id=chunk_id))
                logger.info("finding_recorded", finding_id=finding_id, rule_id=rule_id, chunks=len(chunk_ids))
            elif existing.content_hash != content_hash:
                c.execute(
                    findings_table.update()
                    .where(findings_table.c.finding_id == finding_id)
                    .values(extracted_json=extracted_json, content_hash=content_hash, recorded_at=now())
                )
                logger.info("finding_updated", finding_id=finding_id, rule_id=rule_id)

            if existing_q is not None:
                quarantine.release_entry(c, finding_id, None, existing_q)

        return FindingResult(finding_id=finding_id, accepted=True)

    @staticmethod
    def _withdraw(conn: Connection, finding_id: str) -> None:
        conn.execute(finding_evidence_table.delete().where(finding_evidence_table.c.finding_id == finding_id))
        removed = conn.execute(findings_table.delete().where(findings_table.c.finding_id == finding_id)).rowcount
        if removed:
            logger.info("finding_withdrawn", finding_id=finding_id)

    def _check(self, conn: Connection, extracted_fields: dict[str, Any], chunk_ids: tuple[str, ...]) -> tuple[Reason, ...]:
        reasons: list[Reason] = []
        if not chunk_ids:
            reasons.append(Reason(ReasonCode.MISSING_FIELD, {"field": "evidence_chunk_ids"}))
        else:
            known = set(
                conn.execute(select(document_chunks_table.c.chunk_id).where(document_chunks_table.c.chunk_id.in_(chunk_ids))).scalars()
            )
            for chunk_id in dict.fromkeys(chunk_ids):
                if chunk_id not in known:
                    reasons.append(
                        Reason(
                            ReasonCode.MISSING_REFERENCE,
                            {"field": "evidence_chunk_ids", "parent_kind": "document_chunk", "value": chunk_id},
                        )
                    )
        try:
            canonical_json(extracted_fields)
        except (ValueError, TypeError) as e:
            reasons.append(
                Reason(
                    ReasonCode.INVALID_VALUE,
                    {"field": "extracted_fields", "message": str(e), "value": json.dumps(extracted_fields, default=str)[:200]},
                )
            )
        return tuple(reasons)
