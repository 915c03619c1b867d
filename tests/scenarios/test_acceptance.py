# tests/scenarios/test_acceptance.py
"""End-to-end acceptance scenarios: raw evidence through silver, gold and lineage."""

import threading
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path

import pytest

from fundtrace.contracts.enums import Delivery, ReasonCode, RelationKind, ScopeMode
from fundtrace.contracts.errors import IntegrityError
from fundtrace.contracts.records import GoldCellRef, GoldScope, TransformScope
from fundtrace.core.blob_store import FilesystemBlobStore
from fundtrace.core.config import FundtraceSettings
from fundtrace.core.warehouse.database import WarehouseDB
from fundtrace.engine.service import EvidenceEngine
from tests.helpers.evidence import (
    AS_OF,
    DRAWDOWN_HEADER,
    award,
    awards_csv,
    csv_bytes,
    disbursement,
    disbursements_csv,
    message,
    submit,
)

MARCH = [date(2024, 3, 1) + timedelta(days=n) for n in range(10)]


def _export(count: int, prefix: str = "D") -> tuple[bytes, Decimal]:
    rows = []
    total = Decimal(0)
    for n in range(count):
        amount = Decimal(100 + n) + Decimal("0.25")
        total += amount
        rows.append(disbursement(f"{prefix}-{n:03d}", amount=str(amount), day=MARCH[n % len(MARCH)].isoformat()))
    return disbursements_csv(*rows), total


def _disbursement_total(engine: EvidenceEngine) -> Decimal:
    cells = engine.get_gold_aggregate(GoldScope(metrics=("disbursement_total",)))
    return sum((c.total for c in cells), Decimal(0))


class TestReIngestIdenticalExport:
    """Ingesting the same export twice converges to one set of rows."""

    def test_second_ingest_is_a_new_version_with_no_new_rows(self, engine: EvidenceEngine) -> None:
        submit(engine, "portal/awards.csv", awards_csv(award()), RelationKind.AWARD)
        content, expected_total = _export(100)
        first = submit(engine, "portal/disbursements.csv", content, RelationKind.DISBURSEMENT)
        engine.run_transform("day-1")

        second = submit(engine, "portal/disbursements.csv", content, RelationKind.DISBURSEMENT)
        rerun = engine.run_transform("day-2")

        assert second.object_id == first.object_id
        assert (first.version, second.version) == (1, 2)
        assert second.digest == first.digest
        assert rerun.counts["unchanged"] == 100
        assert rerun.counts["gold_cells"] == 0
        rows = engine.silver.rows(RelationKind.DISBURSEMENT)
        assert len(rows) == 100
        assert {r.pointer.version for r in rows} == {1}
        assert _disbursement_total(engine) == expected_total

    def test_both_versions_in_one_run(self, engine: EvidenceEngine) -> None:
        submit(engine, "portal/awards.csv", awards_csv(award()), RelationKind.AWARD)
        content, expected_total = _export(100)
        submit(engine, "portal/disbursements.csv", content, RelationKind.DISBURSEMENT)
        submit(engine, "portal/disbursements.csv", content, RelationKind.DISBURSEMENT)

        outcome = engine.run_transform("day-1")

        assert outcome.counts["units"] == 3
        assert len(engine.silver.rows(RelationKind.DISBURSEMENT)) == 100
        assert _disbursement_total(engine) == expected_total


class TestNegativeDrawdown:
    """A negative drawdown is quarantined and never reaches gold."""

    def test_negative_amount_is_quarantined_and_excluded(self, engine: EvidenceEngine) -> None:
        submit(engine, "portal/awards.csv", awards_csv(award()), RelationKind.AWARD)
        drawdowns = csv_bytes(
            DRAWDOWN_HEADER,
            [
                ("DR-1", "AW-1", "500.00", "", "2024-04-02"),
                ("DR-2", "AW-1", "-25.00", "", "2024-04-02"),
            ],
        )
        submit(engine, "portal/drawdowns.csv", drawdowns, RelationKind.DRAWDOWN)

        engine.run_transform("day-1")

        [entry] = engine.quarantine.entries("drawdown")
        assert entry.reason_codes == (ReasonCode.NEGATIVE_AMOUNT.value,)
        assert entry.payload is not None
        assert entry.payload["drawdown_id"] == "DR-2"
        assert [r.business_key for r in engine.silver.rows(RelationKind.DRAWDOWN)] == ["DR-1"]
        [cell] = engine.get_gold_aggregate(GoldScope(metrics=("drawdown_requested",)))
        assert cell.total == Decimal("500.00")
        assert cell.row_count == 1


class TestRedeliveredMessage:
    """A redelivered stream message changes nothing."""

    def test_second_delivery_is_a_no_op(self, engine: EvidenceEngine) -> None:
        submit(engine, "portal/awards.csv", awards_csv(award()), RelationKind.AWARD)
        engine.run_transform("day-1")
        payload = message(disbursement_id="D-42", award_id="AW-1", payee="Acme Relief", amount="75.50", disbursed_on="2024-03-05")

        assert engine.on_message("disbursements", 0, 42, payload) == Delivery.ACK
        after_first = engine.gold.snapshot()
        assert engine.on_message("disbursements", 0, 42, payload) == Delivery.ACK

        assert engine.gold.snapshot() == after_first
        assert len(engine.silver.rows(RelationKind.DISBURSEMENT)) == 1
        cell = engine.gold.get_cell(GoldCellRef("disbursement_total", date(2024, 3, 5), "AW-1"))
        assert cell is not None
        assert cell.total == Decimal("75.50")


@pytest.mark.slow
class TestBackfillDuringStreaming:
    """A backfill racing live messages ends where a full recompute says it should."""

    def test_interleaved_state_matches_full_recompute(self, tmp_path: Path, engine_settings: FundtraceSettings) -> None:
        db = WarehouseDB.from_url(f"sqlite:///{tmp_path / 'warehouse.db'}")
        engine = EvidenceEngine(db, FilesystemBlobStore(tmp_path / "blobs"), engine_settings, today=lambda: AS_OF)
        try:
            submit(engine, "portal/awards.csv", awards_csv(award()), RelationKind.AWARD)
            engine.run_transform("awards")
            history, history_total = _export(60, prefix="H")
            submit(engine, "portal/history.csv", history, RelationKind.DISBURSEMENT)

            live_total = Decimal(0)
            payloads = []
            for n in range(40):
                amount = Decimal(10 + n)
                live_total += amount
                payloads.append(
                    message(
                        disbursement_id=f"L-{n:03d}",
                        award_id="AW-1",
                        payee="Acme Relief",
                        amount=str(amount),
                        disbursed_on=MARCH[n % len(MARCH)].isoformat(),
                    )
                )

            errors: list[BaseException] = []
            nacks: list[int] = []

            def backfill() -> None:
                try:
                    engine.run_transform("backfill-2024-03", TransformScope(mode=ScopeMode.FULL))
                except BaseException as e:
                    errors.append(e)

            def stream() -> None:
                try:
                    for offset, payload in enumerate(payloads):
                        while engine.on_message("disbursements", 0, offset, payload) == Delivery.NACK:
                            nacks.append(offset)
                except BaseException as e:
                    errors.append(e)

            threads = [threading.Thread(target=backfill), threading.Thread(target=stream)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=120)

            assert errors == []
            engine.recompute_gold(GoldScope(mode=ScopeMode.INCREMENTAL))
            interleaved = engine.gold.snapshot()

            engine.recompute_gold(GoldScope(mode=ScopeMode.FULL))

            assert engine.gold.snapshot() == interleaved
            assert len(engine.silver.rows(RelationKind.DISBURSEMENT)) == 100
            assert _disbursement_total(engine) == history_total + live_total
            assert engine.gold.pending_changes() == 0
        finally:
            engine.close()


class TestCorruptEvidence:
    """Lineage through corrupted bytes fails loudly, every time."""

    def test_lineage_through_corrupt_object_always_fails(self, engine: EvidenceEngine, blobs: FilesystemBlobStore) -> None:
        submit(engine, "portal/awards.csv", awards_csv(award()), RelationKind.AWARD)
        content = disbursements_csv(disbursement("D-1"))
        result = submit(engine, "portal/disb.csv", content, RelationKind.DISBURSEMENT)
        engine.run_transform("day-1")
        cell = GoldCellRef("disbursement_total", date(2024, 3, 5), "AW-1")
        assert engine.resolve_lineage(cell).consistent

        blob = blobs.base_path / result.digest[:2] / result.digest
        blob.write_bytes(content.replace(b"100.00", b"900.00"))

        with pytest.raises(IntegrityError, match="failed verification"):
            engine.resolve_lineage(cell)

        blob.write_bytes(content)
        with pytest.raises(IntegrityError, match="flagged corrupt"):
            engine.resolve_lineage(cell)
        with pytest.raises(IntegrityError):
            engine.verify(result.object_id)

    def test_unaffected_lineage_still_resolves(self, engine: EvidenceEngine, blobs: FilesystemBlobStore) -> None:
        submit(engine, "portal/awards.csv", awards_csv(award()), RelationKind.AWARD)
        corrupt = submit(engine, "portal/disb-a.csv", disbursements_csv(disbursement("D-1")), RelationKind.DISBURSEMENT)
        submit(engine, "portal/disb-b.csv", disbursements_csv(disbursement("D-2", day="2024-03-09")), RelationKind.DISBURSEMENT)
        engine.run_transform("day-1")
        (blobs.base_path / corrupt.digest[:2] / corrupt.digest).write_bytes(b"tampered")

        chain = engine.resolve_lineage(GoldCellRef("disbursement_total", date(2024, 3, 9), "AW-1"))

        assert chain.consistent
        assert [obj.source_label for obj in chain.objects] == ["portal/disb-b.csv"]
