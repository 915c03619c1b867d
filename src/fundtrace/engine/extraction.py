# src/fundtrace/engine/extraction.py
"""Extraction runner: calls the external evidence model over document chunks.

Every call is recorded in extraction_calls (started -> succeeded | failed)
with its attempt count, in transactions of its own, so a failing model
leaves an audit trail even though nothing else is written.

Inputs are always verified bytes: chunk text is cut from the raw object
after digest verification, and the chunk's own digest is checked before the
text leaves the engine.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy import select

from fundtrace.contracts.enums import CallKind, CallStatus
from fundtrace.contracts.errors import ExecutionError, IntegrityError
from fundtrace.contracts.evidence_model import EvidenceModel, EvidenceModelError
from fundtrace.contracts.records import DocumentChunk, ExtractionCall, FindingResult
from fundtrace.core.canonical import canonical_json, content_digest, stable_hash
from fundtrace.core.logging import get_logger
from fundtrace.core.warehouse._database_ops import DatabaseOps
from fundtrace.core.warehouse._helpers import generate_id, now
from fundtrace.core.warehouse.database import WarehouseDB
from fundtrace.core.warehouse.repositories import ExtractionCallRepository
from fundtrace.core.warehouse.schema import chunk_embeddings_table, extraction_calls_table
from fundtrace.engine.findings import FindingStore
from fundtrace.engine.raw_store import RawStore
from fundtrace.engine.retry import MaxRetriesExceeded, RetryManager

logger = get_logger(__name__)

T = TypeVar("T")


def prompt_hash(prompt: str) -> str:
    return stable_hash({"prompt": prompt})


def _checked_vector(vector: list[float]) -> list[float]:
    """Reject embeddings that cannot be stored as canonical JSON (NaN, Infinity, non-numbers)."""
    try:
        canonical_json(vector)
    except (ValueError, TypeError) as e:
        raise EvidenceModelError(f"Embedding is not a finite vector: {e}", retryable=False) from e
    return vector


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, EvidenceModelError) and error.retryable


class ExtractionRunner:
    """Runs embed/extract calls with retries and stores their outputs with lineage."""

    def __init__(
        self,
        db: WarehouseDB,
        raw_store: RawStore,
        findings: FindingStore,
        model: EvidenceModel,
        retry_manager: RetryManager,
    ) -> None:
        self._db = db
        self._ops = DatabaseOps(db)
        self._raw = raw_store
        self._findings = findings
        self._model = model
        self._retry = retry_manager
        self._call_repo = ExtractionCallRepository()

    # === Chunk text ===

    def chunk_texts(self, chunks: list[DocumentChunk]) -> list[str]:
        """Verified text of each chunk, in order.

        Raises:
            IntegrityError: If an object or chunk byte range fails verification
        """
        contents: dict[tuple[str, int], bytes] = {}
        texts = []
        for chunk in chunks:
            key = (chunk.object_id, chunk.version)
            if key not in contents:
                contents[key] = self._raw.get(chunk.object_id, chunk.version)
            piece = contents[key][chunk.byte_start : chunk.byte_end]
            if content_digest(piece) != chunk.chunk_digest:
                raise IntegrityError(
                    f"Chunk {chunk.chunk_id} bytes do not match the recorded chunk digest",
                    object_id=chunk.object_id,
                    version=chunk.version,
                )
            texts.append(piece.decode("utf-8", errors="replace"))
        return texts

    # === Capabilities ===

    def embed_chunks(self, object_id: str, version: int | None = None) -> int:
        """Embed every chunk of a document version not yet embedded by this model.

        Returns:
            Number of embeddings stored

        Raises:
            MaxRetriesExceeded: If a retryable failure persisted past the retry budget
            EvidenceModelError: If the model failed with a non-retryable error
        """
        chunks = self._findings.list_chunks(object_id, version)
        if not chunks:
            return 0
        done = {
            row.chunk_id
            for row in self._ops.execute_fetchall(
                select(chunk_embeddings_table.c.chunk_id).where(
                    chunk_embeddings_table.c.chunk_id.in_([c.chunk_id for c in chunks]),
                    chunk_embeddings_table.c.model_name == self._model.name,
                )
            )
        }
        todo = [c for c in chunks if c.chunk_id not in done]

        stored = 0
        for chunk, text in zip(todo, self.chunk_texts(todo), strict=True):
            call_id, vector = self._call(CallKind.EMBED, chunk.chunk_digest, lambda t=text: _checked_vector(self._model.embed(t)))
            with self._db.connection() as conn:
                conn.execute(
                    chunk_embeddings_table.insert().values(
                        chunk_id=chunk.chunk_id,
                        model_name=self._model.name,
                        vector_json=canonical_json(vector),
                        vector_hash=stable_hash(vector),
                        call_id=call_id,
                        created_at=now(),
                    )
                )
            stored += 1
        logger.info("chunks_embedded", object_id=object_id, model_name=self._model.name, stored=stored, skipped=len(done))
        return stored

    def embedding(self, chunk_id: str) -> list[float] | None:
        row = self._ops.execute_fetchone(
            select(chunk_embeddings_table.c.vector_json).where(
                chunk_embeddings_table.c.chunk_id == chunk_id,
                chunk_embeddings_table.c.model_name == self._model.name,
            )
        )
        return json.loads(row.vector_json) if row is not None else None

    def extract_finding(self, bundle_id: str, rule_id: str, prompt: str, chunk_ids: list[str]) -> FindingResult:
        """Run extraction over cited chunks and record the result as a finding.

        Raises:
            KeyError: If a chunk id is unknown
            MaxRetriesExceeded: If a retryable failure persisted past the retry budget
            EvidenceModelError: If the model failed with a non-retryable error
        """
        chunks = [self._findings.get_chunk(chunk_id) for chunk_id in chunk_ids]
        text = "\n".join(self.chunk_texts(chunks))
        input_hash = stable_hash({"chunks": [c.chunk_digest for c in chunks], "prompt": prompt})
        _, fields = self._call(CallKind.EXTRACT, input_hash, lambda: self._model.extract(text, prompt))
        return self._findings.record(
            bundle_id,
            rule_id,
            fields,
            tuple(chunk_ids),
            self._model.name,
            prompt_hash(prompt),
        )

    # === Call records ===

    def _call(self, kind: CallKind, input_hash: str, operation: Callable[[], T]) -> tuple[str, T]:
        call_id = generate_id()
        with self._db.connection() as conn:
            conn.execute(
                extraction_calls_table.insert().values(
                    call_id=call_id,
                    kind=kind.value,
                    model_name=self._model.name,
                    status=CallStatus.STARTED.value,
                    attempts=0,
                    input_hash=input_hash,
                    started_at=now(),
                )
            )

        attempts = 0

        def attempt() -> T:
            nonlocal attempts
            attempts += 1
            return operation()

        def on_retry(attempt_number: int, error: BaseException) -> None:
            logger.warning("model_call_retry", call_id=call_id, kind=kind.value, attempt=attempt_number, error=str(error))

        try:
            result = self._retry.execute_with_retry(attempt, is_retryable=_is_retryable, on_retry=on_retry)
        except Exception as e:
            cause = e.last_error if isinstance(e, MaxRetriesExceeded) else e
            error: ExecutionError = {"exception": str(cause), "type": type(cause).__name__}
            self._finish(call_id, CallStatus.FAILED, attempts, error)
            logger.error("model_call_failed", call_id=call_id, kind=kind.value, attempts=attempts, error=str(cause))
            raise

        self._finish(call_id, CallStatus.SUCCEEDED, attempts, None)
        return call_id, result

    def _finish(self, call_id: str, status: CallStatus, attempts: int, error: ExecutionError | None) -> None:
        with self._db.connection() as conn:
            conn.execute(
                extraction_calls_table.update()
                .where(extraction_calls_table.c.call_id == call_id)
                .values(
                    status=status.value,
                    attempts=attempts,
                    completed_at=now(),
                    error_json=json.dumps(error) if error is not None else None,
                )
            )

    def calls(self, kind: CallKind | None = None) -> list[ExtractionCall]:
        query = select(extraction_calls_table)
        if kind is not None:
            query = query.where(extraction_calls_table.c.kind == kind.value)
        query = query.order_by(extraction_calls_table.c.started_at, extraction_calls_table.c.call_id)
        return [self._call_repo.load(row) for row in self._ops.execute_fetchall(query)]

