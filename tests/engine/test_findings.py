# tests/engine/test_findings.py
"""Tests for document chunking and finding storage."""

import pytest
from sqlalchemy import select

from fundtrace.contracts.enums import QuarantineEventKind, ReasonCode, RelationKind
from fundtrace.core.blob_store import FilesystemBlobStore
from fundtrace.core.config import ChunkingSettings, FundtraceSettings
from fundtrace.core.warehouse.database import WarehouseDB
from fundtrace.core.warehouse.schema import finding_evidence_table
from fundtrace.engine.findings import FINDING_RECORD_TYPE, chunk_document
from fundtrace.engine.service import EvidenceEngine
from tests.helpers.evidence import AS_OF, submit

DOCUMENT = b"Grant agreement AW-1\nRecipient: Acme Relief\nAmount: 1000.00\nSigned 2024-03-01\n"


def _document(engine: EvidenceEngine, content: bytes = DOCUMENT) -> str:
    return submit(engine, "contracts/aw-1.txt", content, RelationKind.DOCUMENT, content_type="text/plain").object_id


class TestChunking:
    @pytest.fixture
    def small_chunks(self, warehouse: WarehouseDB, blobs: FilesystemBlobStore) -> EvidenceEngine:
        settings = FundtraceSettings(chunking=ChunkingSettings(max_chunk_bytes=32))
        return EvidenceEngine(warehouse, blobs, settings, today=lambda: AS_OF)

    def test_chunks_cover_the_document_on_line_boundaries(self, small_chunks: EvidenceEngine) -> None:
        object_id = _document(small_chunks)
        small_chunks.run_transform("r1")

        chunks = small_chunks.list_chunks(object_id)

        assert [c.ordinal for c in chunks] == list(range(len(chunks)))
        assert chunks[0].byte_start == 0
        assert chunks[-1].byte_end == len(DOCUMENT)
        for before, after in zip(chunks, chunks[1:], strict=False):
            assert before.byte_end == after.byte_start
        for chunk in chunks:
            assert chunk.byte_end - chunk.byte_start <= 32
            assert DOCUMENT[chunk.byte_end - 1 : chunk.byte_end] == b"\n"

    def test_chunk_without_newline_is_cut_at_the_limit(self, small_chunks: EvidenceEngine) -> None:
        content = b"x" * 80
        object_id = _document(small_chunks, content)
        small_chunks.run_transform("r1")

        chunks = small_chunks.list_chunks(object_id)

        assert [(c.byte_start, c.byte_end) for c in chunks] == [(0, 32), (32, 64), (64, 80)]

    def test_chunk_ids_are_deterministic(self, engine: EvidenceEngine) -> None:
        object_id = _document(engine)
        obj = engine.raw_store.describe(object_id)

        first = chunk_document(obj, DOCUMENT, 16)
        second = chunk_document(obj, DOCUMENT, 16)

        assert [c.chunk_id for c in first] == [c.chunk_id for c in second]
        assert len({c.chunk_id for c in first}) == len(first)

    def test_new_version_gets_new_chunks(self, engine: EvidenceEngine) -> None:
        object_id = _document(engine)
        engine.run_transform("r1")
        [v1_chunk] = engine.list_chunks(object_id)

        _document(engine, DOCUMENT + b"Amended 2024-04-01\n")
        engine.run_transform("r2")

        [v2_chunk] = engine.list_chunks(object_id)
        assert v2_chunk.version == 2
        assert v2_chunk.chunk_id != v1_chunk.chunk_id
        assert engine.list_chunks(object_id, 1) == [v1_chunk]

    def test_unknown_object_has_no_chunks(self, engine: EvidenceEngine) -> None:
        assert engine.list_chunks("missing") == []


class TestRecordFinding:
    def _chunk_ids(self, engine: EvidenceEngine) -> list[str]:
        object_id = _document(engine)
        engine.run_transform("r1")
        return [c.chunk_id for c in engine.list_chunks(object_id)]

    def test_recorded_finding_is_readable(self, engine: EvidenceEngine) -> None:
        chunk_ids = self._chunk_ids(engine)

        result = engine.record_finding("bundle-1", "amount-matches", {"amount": "1000.00"}, chunk_ids, "model-a", "p-1")

        assert result.accepted
        assert result.reasons == ()
        finding = engine.findings.get(result.finding_id)
        assert finding.evidence_chunk_ids == tuple(chunk_ids)
        assert finding.extracted_fields == {"amount": "1000.00"}
        assert finding.model_name == "model-a"

    def test_recording_twice_is_a_no_op(self, engine: EvidenceEngine) -> None:
        chunk_ids = self._chunk_ids(engine)
        first = engine.record_finding("bundle-1", "amount-matches", {"amount": "1000.00"}, chunk_ids, "model-a", "p-1")
        stored = engine.findings.get(first.finding_id)

        second = engine.record_finding("bundle-1", "amount-matches", {"amount": "1000.00"}, chunk_ids, "model-a", "p-1")

        assert second.finding_id == first.finding_id
        assert engine.findings.get(first.finding_id).recorded_at == stored.recorded_at

    def test_re_extraction_replaces_fields(self, engine: EvidenceEngine) -> None:
        chunk_ids = self._chunk_ids(engine)
        first = engine.record_finding("bundle-1", "amount-matches", {"amount": "1000.00"}, chunk_ids, "model-a", "p-1")

        second = engine.record_finding("bundle-1", "amount-matches", {"amount": "999.00"}, chunk_ids, "model-a", "p-1")

        assert second.finding_id == first.finding_id
        assert engine.findings.get(first.finding_id).extracted_fields == {"amount": "999.00"}

    def test_identity_depends_on_model_and_prompt(self, engine: EvidenceEngine) -> None:
        chunk_ids = self._chunk_ids(engine)

        a = engine.record_finding("bundle-1", "amount-matches", {}, chunk_ids, "model-a", "p-1")
        b = engine.record_finding("bundle-1", "amount-matches", {}, chunk_ids, "model-b", "p-1")
        c = engine.record_finding("bundle-1", "amount-matches", {}, chunk_ids, "model-a", "p-2")

        assert len({a.finding_id, b.finding_id, c.finding_id}) == 3


class TestFindingQuarantine:
    def test_no_evidence_is_quarantined(self, engine: EvidenceEngine) -> None:
        result = engine.record_finding("bundle-1", "amount-matches", {"amount": "1"}, [], "model-a", "p-1")

        assert not result.accepted
        assert [r.code for r in result.reasons] == [ReasonCode.MISSING_FIELD]
        with pytest.raises(KeyError):
            engine.findings.get(result.finding_id)
        entry = engine.quarantine.get(result.finding_id)
        assert entry is not None
        assert entry.record_type == FINDING_RECORD_TYPE
        assert entry.payload is not None
        assert entry.payload["rule_id"] == "amount-matches"

    def test_non_canonical_fields_are_quarantined(self, engine: EvidenceEngine) -> None:
        object_id = _document(engine)
        engine.run_transform("r1")
        chunk_ids = [c.chunk_id for c in engine.list_chunks(object_id)]

        result = engine.record_finding("bundle-1", "score", {"score": float("nan")}, chunk_ids, "model-a", "p-1")

        assert not result.accepted
        assert [r.code for r in result.reasons] == [ReasonCode.INVALID_VALUE]

    def test_quarantining_a_stored_finding_withdraws_it(self, engine: EvidenceEngine) -> None:
        object_id = _document(engine)
        engine.run_transform("r1")
        chunk_ids = [c.chunk_id for c in engine.list_chunks(object_id)]
        stored = engine.record_finding("bundle-1", "score", {"score": 1.0}, chunk_ids, "model-a", "p-1")
        assert stored.accepted

        result = engine.record_finding("bundle-1", "score", {"score": float("nan")}, chunk_ids, "model-a", "p-1")

        assert not result.accepted
        assert result.finding_id == stored.finding_id
        with pytest.raises(KeyError):
            engine.findings.get(stored.finding_id)
        with engine.db.connection() as conn:
            assert conn.execute(select(finding_evidence_table).where(finding_evidence_table.c.finding_id == stored.finding_id)).first() is None
        assert engine.quarantine.get(stored.finding_id) is not None

    def test_unknown_chunk_waits_and_is_released(self, engine: EvidenceEngine) -> None:
        object_id = _document(engine)
        expected = chunk_document(engine.raw_store.describe(object_id), DOCUMENT, engine.settings.chunking.max_chunk_bytes)
        chunk_ids = [c.chunk_id for c in expected]

        waiting = engine.record_finding("bundle-1", "amount-matches", {"amount": "1000.00"}, chunk_ids, "model-a", "p-1")

        assert not waiting.accepted
        [reason] = waiting.reasons
        assert reason.code == ReasonCode.MISSING_REFERENCE
        assert reason.detail["parent_kind"] == "document_chunk"  # type: ignore[typeddict-item]

        engine.run_transform("r1")
        released = engine.record_finding("bundle-1", "amount-matches", {"amount": "1000.00"}, chunk_ids, "model-a", "p-1")

        assert released.accepted
        assert released.finding_id == waiting.finding_id
        assert engine.quarantine.get(released.finding_id) is None
        assert [e.kind for e in engine.quarantine.history(released.finding_id)] == [
            QuarantineEventKind.QUARANTINED,
            QuarantineEventKind.RELEASED,
        ]
