# tests/engine/test_silver.py
"""Tests for the normalization engine (raw -> silver | quarantine)."""

import json
from typing import Any

import pytest

from fundtrace.contracts.enums import QuarantineEventKind, ReasonCode, RelationKind, ScopeMode, UnitStatus
from fundtrace.contracts.errors import TransactionAbort
from fundtrace.contracts.records import SourceRecord, TransformScope
from fundtrace.core.config import QualitySettings
from fundtrace.engine.quality import GateContext, GateResult, QualityGate
from fundtrace.engine.service import EvidenceEngine
from tests.helpers.evidence import (
    AS_OF,
    award,
    awards_csv,
    disbursement,
    disbursements_csv,
    submit,
)


class _ExplodingGate(QualityGate):
    """Raises on the second row of any batch."""

    def evaluate(self, record: SourceRecord, context: GateContext) -> GateResult:
        if record.pointer.row_number == 2:
            raise RuntimeError("gate exploded")
        return super().evaluate(record, context)


def _seed_award(engine: EvidenceEngine) -> None:
    submit(engine, "portal/awards.csv", awards_csv(award()), RelationKind.AWARD)


class TestAcceptance:
    def test_valid_rows_reach_silver(self, engine: EvidenceEngine) -> None:
        _seed_award(engine)
        submit(engine, "portal/disb.csv", disbursements_csv(disbursement("D-1"), disbursement("D-2")), RelationKind.DISBURSEMENT)

        outcome = engine.run_transform("r1")

        assert outcome.counts["units"] == 2
        assert outcome.counts["accepted"] == 3
        assert outcome.counts["quarantined"] == 0
        rows = engine.silver.rows(RelationKind.DISBURSEMENT)
        assert sorted(r.business_key for r in rows) == ["D-1", "D-2"]
        assert all(r.revision == 1 for r in rows)
        assert {r.pointer.row_number for r in rows} == {1, 2}

    def test_identity_key_is_object_and_row(self, engine: EvidenceEngine) -> None:
        from fundtrace.core.canonical import tabular_identity_key

        result = submit(engine, "portal/awards.csv", awards_csv(award()), RelationKind.AWARD)
        engine.run_transform("r1")

        key = tabular_identity_key("award", result.object_id, 1)
        row = engine.silver.get_row(key)
        assert row is not None
        assert row.business_key == "AW-1"

    def test_outcome_is_recorded_per_version(self, engine: EvidenceEngine) -> None:
        result = submit(engine, "portal/awards.csv", awards_csv(award()), RelationKind.AWARD)
        outcome = engine.run_transform("r1")

        recorded = engine.silver.outcome(result.object_id, 1)
        assert recorded is not None
        assert recorded.status == UnitStatus.COMMITTED
        assert recorded.run_id == outcome.run_id
        assert recorded.accepted == 1


class TestIdempotence:
    def test_full_rerun_changes_nothing(self, engine: EvidenceEngine) -> None:
        _seed_award(engine)
        submit(engine, "portal/disb.csv", disbursements_csv(disbursement("D-1")), RelationKind.DISBURSEMENT)
        engine.run_transform("r1")
        before = {r.identity_key: (r.content_hash, r.revision, r.updated_at) for r in engine.silver.rows()}

        outcome = engine.run_transform("r2", TransformScope(mode=ScopeMode.FULL))

        assert outcome.counts["units"] == 2
        assert outcome.counts["unchanged"] == 2
        assert outcome.counts["gold_cells"] == 0
        assert {r.identity_key: (r.content_hash, r.revision, r.updated_at) for r in engine.silver.rows()} == before
        assert engine.gold.pending_changes() == 0

    def test_incremental_rerun_has_no_units(self, engine: EvidenceEngine) -> None:
        _seed_award(engine)
        engine.run_transform("r1")

        outcome = engine.run_transform("r2")
        assert outcome.counts["units"] == 0

    def test_same_bytes_uploaded_twice_write_once(self, engine: EvidenceEngine) -> None:
        _seed_award(engine)
        _seed_award(engine)

        outcome = engine.run_transform("r1")

        assert outcome.counts["units"] == 2
        assert outcome.counts["accepted"] == 2
        assert outcome.counts["unchanged"] == 1
        [row] = engine.silver.rows(RelationKind.AWARD)
        assert row.revision == 1
        assert row.pointer.version == 1


class TestQuarantine:
    def test_missing_parent_waits_then_releases(self, engine: EvidenceEngine) -> None:
        submit(engine, "portal/disb.csv", disbursements_csv(disbursement("D-1")), RelationKind.DISBURSEMENT)
        first = engine.run_transform("r1")

        assert first.counts["quarantined"] == 1
        [entry] = engine.quarantine.entries()
        assert entry.reason_codes == ("missing_reference",)
        assert engine.silver.rows() == []

        _seed_award(engine)
        second = engine.run_transform("r2")

        assert second.counts["units"] == 2
        assert second.counts["accepted"] == 2
        assert engine.quarantine.entries() == []
        history = engine.quarantine.history(entry.identity_key)
        assert [e.kind for e in history] == [QuarantineEventKind.QUARANTINED, QuarantineEventKind.RELEASED]

    def test_silver_and_quarantine_are_exclusive(self, engine: EvidenceEngine) -> None:
        _seed_award(engine)
        label = "portal/disb.csv"
        submit(engine, label, disbursements_csv(disbursement("D-1", amount="100.00")), RelationKind.DISBURSEMENT)
        engine.run_transform("r1")
        [row] = engine.silver.rows(RelationKind.DISBURSEMENT)

        submit(engine, label, disbursements_csv(disbursement("D-1", amount="-100.00")), RelationKind.DISBURSEMENT)
        engine.run_transform("r2")

        assert engine.silver.get_row(row.identity_key) is None
        held = engine.quarantine.get(row.identity_key)
        assert held is not None
        assert held.reason_codes == ("negative_amount",)
        assert held.pointer is not None
        assert held.pointer.version == 2

        submit(engine, label, disbursements_csv(disbursement("D-1", amount="150.00")), RelationKind.DISBURSEMENT)
        engine.run_transform("r3")

        restored = engine.silver.get_row(row.identity_key)
        assert restored is not None
        assert restored.content["amount"] == "150.00"
        assert engine.quarantine.get(row.identity_key) is None

    def test_duplicate_keys_quarantine_every_occurrence(self, engine: EvidenceEngine) -> None:
        _seed_award(engine)
        submit(
            engine,
            "portal/disb.csv",
            disbursements_csv(disbursement("D-1"), disbursement("D-1", amount="5.00"), disbursement("D-2")),
            RelationKind.DISBURSEMENT,
        )

        outcome = engine.run_transform("r1")

        assert outcome.counts["quarantined"] == 2
        entries = engine.quarantine.entries(RelationKind.DISBURSEMENT.value)
        assert len(entries) == 2
        assert all(e.reason_codes == ("duplicate_key",) for e in entries)
        assert [r.business_key for r in engine.silver.rows(RelationKind.DISBURSEMENT)] == ["D-2"]

    def test_malformed_row_is_quarantined_with_payload(self, engine: EvidenceEngine) -> None:
        _seed_award(engine)
        content = b"disbursement_id,award_id,payee,amount,disbursed_on\nD-1,AW-1,Acme,1.00\n"
        submit(engine, "portal/disb.csv", content, RelationKind.DISBURSEMENT)

        engine.run_transform("r1")

        [entry] = engine.quarantine.entries(RelationKind.DISBURSEMENT.value)
        assert entry.reasons[0].code == ReasonCode.MALFORMED_RECORD
        assert entry.payload == {"__raw_line__": "D-1,AW-1,Acme,1.00"}

    def test_malformed_object_gets_one_entry_then_releases(self, engine: EvidenceEngine) -> None:
        label = "portal/awards.csv"
        submit(engine, label, b"Award ID,award_id\nAW-1,AW-1\n", RelationKind.AWARD)
        outcome = engine.run_transform("r1")

        assert outcome.counts["quarantined"] == 1
        [entry] = engine.quarantine.entries()
        assert entry.reasons[0].code == ReasonCode.MALFORMED_RECORD
        assert "collision" in entry.reasons[0].detail["message"]  # type: ignore[typeddict-item]
        assert entry.pointer is not None
        assert entry.pointer.row_number is None

        submit(engine, label, awards_csv(award()), RelationKind.AWARD)
        engine.run_transform("r2")

        assert engine.quarantine.get(entry.identity_key) is None
        assert len(engine.silver.rows(RelationKind.AWARD)) == 1


class TestPrecedence:
    def test_stale_version_does_not_regress_row(self, engine: EvidenceEngine) -> None:
        label = "portal/awards.csv"
        submit(engine, label, awards_csv(award(amount="100.00")), RelationKind.AWARD)
        result = submit(engine, label, awards_csv(award(amount="150.00")), RelationKind.AWARD)
        engine.run_transform("r1")
        [row] = engine.silver.rows(RelationKind.AWARD)
        assert row.content["award_amount"] == "150.00"

        old = engine.silver.load_batch(engine.raw_store.describe(result.object_id, 1))
        replay = engine.silver.transform(None, old)

        assert replay.stale == 1
        [after] = engine.silver.rows(RelationKind.AWARD)
        assert after.content["award_amount"] == "150.00"
        assert after.revision == row.revision

    def test_arrival_order_does_not_matter(self, engine: EvidenceEngine) -> None:
        label = "portal/awards.csv"
        result = submit(engine, label, awards_csv(award(amount="100.00")), RelationKind.AWARD)
        submit(engine, label, awards_csv(award(amount="150.00")), RelationKind.AWARD)
        v1 = engine.silver.load_batch(engine.raw_store.describe(result.object_id, 1))
        v2 = engine.silver.load_batch(engine.raw_store.describe(result.object_id, 2))

        engine.silver.transform(None, v2)
        engine.silver.transform(None, v1)

        [row] = engine.silver.rows(RelationKind.AWARD)
        assert row.content["award_amount"] == "150.00"
        assert row.pointer.version == 2

    @pytest.mark.parametrize("correction_first", [True, False])
    def test_higher_version_of_another_object_wins_for_a_natural_key(self, engine: EvidenceEngine, correction_first: bool) -> None:
        def award_json(amount: str) -> bytes:
            return json.dumps({"award_id": "AW-1", "program_code": "P-1", "award_amount": amount, "award_date": "2024-03-01"}).encode()

        for amount in ("100.00", "110.00", "120.00"):
            latest = submit(engine, "portal/award.json", award_json(amount), RelationKind.AWARD, content_type="application/json")
        correction = submit(engine, "portal/corrections.json", award_json("999.00"), RelationKind.AWARD, content_type="application/json")
        v3 = engine.silver.load_batch(engine.raw_store.describe(latest.object_id, 3))
        fix = engine.silver.load_batch(engine.raw_store.describe(correction.object_id, 1))

        for batch in ((fix, v3) if correction_first else (v3, fix)):
            engine.silver.transform(None, batch)

        [row] = engine.silver.rows(RelationKind.AWARD)
        assert row.content["award_amount"] == "120.00"
        assert (row.pointer.object_id, row.pointer.version) == (latest.object_id, 3)


class TestUnits:
    def test_failed_unit_rolls_back_every_write(self, engine: EvidenceEngine) -> None:
        from fundtrace.engine.silver import SilverTransform

        result = submit(engine, "portal/awards.csv", awards_csv(award("AW-1"), award("AW-2")), RelationKind.AWARD)
        silver = SilverTransform(engine.db, engine.raw_store, QualitySettings(), gate=_ExplodingGate(), today=lambda: AS_OF)
        obj = engine.raw_store.latest(result.object_id)

        with pytest.raises(TransactionAbort) as exc_info:
            silver.transform(None, silver.load_batch(obj))

        assert exc_info.value.object_id == result.object_id
        assert isinstance(exc_info.value.cause, RuntimeError)
        assert silver.rows() == []
        assert silver.outcome(result.object_id, 1) is None
        assert engine.gold.pending_changes() == 0

    def test_failed_unit_is_replanned(self, engine: EvidenceEngine) -> None:
        from fundtrace.engine.silver import SilverTransform

        result = submit(engine, "portal/awards.csv", awards_csv(award("AW-1"), award("AW-2")), RelationKind.AWARD)
        silver = SilverTransform(engine.db, engine.raw_store, QualitySettings(), gate=_ExplodingGate(), today=lambda: AS_OF)
        obj = engine.raw_store.latest(result.object_id)
        with pytest.raises(TransactionAbort) as exc_info:
            silver.transform(None, silver.load_batch(obj))
        silver.record_failure(obj, None, exc_info.value.to_error())

        recorded = silver.outcome(result.object_id, 1)
        assert recorded is not None
        assert recorded.status == UnitStatus.FAILED
        assert recorded.error is not None
        assert recorded.error["type"] == "RuntimeError"
        assert [o.object_id for o in silver.plan(TransformScope())] == [result.object_id]


class TestPlanning:
    def test_parents_are_planned_before_children(self, engine: EvidenceEngine) -> None:
        disb = submit(engine, "portal/disb.csv", disbursements_csv(disbursement("D-1")), RelationKind.DISBURSEMENT)
        awards = submit(engine, "portal/awards.csv", awards_csv(award()), RelationKind.AWARD)

        planned = engine.silver.plan(TransformScope())
        assert [o.object_id for o in planned] == [awards.object_id, disb.object_id]

    def test_scope_kinds_filter(self, engine: EvidenceEngine) -> None:
        submit(engine, "portal/disb.csv", disbursements_csv(disbursement("D-1")), RelationKind.DISBURSEMENT)
        awards = submit(engine, "portal/awards.csv", awards_csv(award()), RelationKind.AWARD)

        planned = engine.silver.plan(TransformScope(kinds=(RelationKind.AWARD,)))
        assert [o.object_id for o in planned] == [awards.object_id]

    def test_full_scope_plans_latest_versions_only(self, engine: EvidenceEngine) -> None:
        label = "portal/awards.csv"
        submit(engine, label, awards_csv(award(amount="1.00")), RelationKind.AWARD)
        submit(engine, label, awards_csv(award(amount="2.00")), RelationKind.AWARD)

        planned = engine.silver.plan(TransformScope(mode=ScopeMode.FULL))
        assert [o.version for o in planned] == [2]


class TestDocuments:
    def test_document_is_chunked_and_recorded(self, engine: EvidenceEngine) -> None:
        content = b"Grant agreement\nAward AW-1 for 1000.00\n"
        result = submit(engine, "contracts/aw-1.txt", content, RelationKind.DOCUMENT, content_type="text/plain")

        engine.run_transform("r1")

        chunks = engine.list_chunks(result.object_id)
        assert chunks
        assert chunks[0].byte_start == 0
        assert chunks[-1].byte_end == len(content)
        [row] = engine.silver.rows(RelationKind.DOCUMENT)
        assert row.business_key == result.object_id
        assert row.content["title"] == "contracts/aw-1.txt"


def _codes(entries: list[Any]) -> list[str]:
    return [code for entry in entries for code in entry.reason_codes]


class TestReferenceLookup:
    def test_parent_committed_in_same_run_resolves_children(self, engine: EvidenceEngine) -> None:
        submit(engine, "portal/disb.csv", disbursements_csv(disbursement("D-1", award_id="AW-9")), RelationKind.DISBURSEMENT)
        submit(engine, "portal/awards.csv", awards_csv(award("AW-9")), RelationKind.AWARD)

        outcome = engine.run_transform("r1")

        assert outcome.counts["accepted"] == 2
        assert _codes(engine.quarantine.entries()) == []
