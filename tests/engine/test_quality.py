# tests/engine/test_quality.py
"""Tests for the quality gate rules."""

from datetime import date
from decimal import Decimal
from typing import Any

import pytest

from fundtrace.contracts.enums import ReasonCode, RelationKind
from fundtrace.contracts.records import LineagePointer, SourceRecord
from fundtrace.engine.quality import Accepted, GateContext, QualityGate, Quarantined


def _context(*, parents: set[tuple[RelationKind, str]] | None = None, batch_keys: dict[tuple[RelationKind, str], int] | None = None) -> GateContext:
    known = parents if parents is not None else {(RelationKind.AWARD, "AW-1")}
    return GateContext(
        as_of=date(2024, 6, 30),
        earliest_date=date(1990, 1, 1),
        max_future_days=365,
        reference_exists=lambda kind, key: (kind, key) in known,
        batch_keys=batch_keys if batch_keys is not None else {},
    )


def _record(kind: RelationKind, **data: Any) -> SourceRecord:
    return SourceRecord(kind, LineagePointer("obj-1", 1, 1), data)


def _disbursement(**overrides: Any) -> SourceRecord:
    data = {
        "disbursement_id": "D-1",
        "award_id": "AW-1",
        "payee": "Acme Relief",
        "amount": "125.50",
        "disbursed_on": "2024-03-05",
    }
    data.update(overrides)
    return _record(RelationKind.DISBURSEMENT, **data)


def _codes(result: Quarantined | Accepted) -> list[ReasonCode]:
    assert isinstance(result, Quarantined)
    return [r.code for r in result.reasons]


class TestAccepted:
    def test_valid_row_is_typed(self) -> None:
        result = QualityGate().evaluate(_disbursement(), _context())

        assert isinstance(result, Accepted)
        row = result.row
        assert row.business_key == "D-1"
        assert row.content["amount"] == "125.50"
        assert row.metric == "disbursement_total"
        assert row.bucket_date == date(2024, 3, 5)
        assert row.group_key == "AW-1"
        assert row.amount == Decimal("125.50")

    def test_unknown_columns_are_ignored(self) -> None:
        result = QualityGate().evaluate(_disbursement(comment="late"), _context())

        assert isinstance(result, Accepted)
        assert "comment" not in result.row.content

    def test_relation_without_metric_has_no_bucket(self) -> None:
        record = _record(RelationKind.DOCUMENT, document_id="DOC-1", title="Agreement")
        result = QualityGate().evaluate(record, _context())

        assert isinstance(result, Accepted)
        assert result.row.metric is None
        assert result.row.amount is None


class TestRules:
    def test_missing_field(self) -> None:
        result = QualityGate().evaluate(_disbursement(amount=""), _context())

        assert _codes(result) == [ReasonCode.MISSING_FIELD]
        assert isinstance(result, Quarantined)
        assert result.reasons[0].detail == {"field": "amount"}

    def test_invalid_value_is_reported_once(self) -> None:
        result = QualityGate().evaluate(_disbursement(amount="twelve"), _context())

        assert _codes(result) == [ReasonCode.INVALID_VALUE]

    def test_missing_reference(self) -> None:
        result = QualityGate().evaluate(_disbursement(award_id="AW-404"), _context())

        assert isinstance(result, Quarantined)
        assert _codes(result) == [ReasonCode.MISSING_REFERENCE]
        assert result.reasons[0].detail == {"field": "award_id", "parent_kind": "award", "value": "AW-404"}
        assert result.awaiting_reference

    def test_negative_amount(self) -> None:
        result = QualityGate().evaluate(_disbursement(amount="-5"), _context())

        assert _codes(result) == [ReasonCode.NEGATIVE_AMOUNT]

    @pytest.mark.parametrize("day", ["1989-12-31", "2025-07-01"])
    def test_date_out_of_range(self, day: str) -> None:
        result = QualityGate().evaluate(_disbursement(disbursed_on=day), _context())

        assert _codes(result) == [ReasonCode.DATE_OUT_OF_RANGE]

    def test_date_at_the_edge_is_accepted(self) -> None:
        result = QualityGate().evaluate(_disbursement(disbursed_on="2025-06-30"), _context())

        assert isinstance(result, Accepted)

    def test_inverted_date_range(self) -> None:
        record = _record(
            RelationKind.AWARD,
            award_id="AW-2",
            award_amount="10",
            award_date="2024-01-01",
            period_start="2024-12-31",
            period_end="2024-01-01",
        )
        result = QualityGate().evaluate(record, _context())

        assert _codes(result) == [ReasonCode.INVERTED_DATE_RANGE]

    def test_duplicate_key_in_batch(self) -> None:
        context = _context(batch_keys={(RelationKind.DISBURSEMENT, "D-1"): 2})
        result = QualityGate().evaluate(_disbursement(), context)

        assert isinstance(result, Quarantined)
        assert _codes(result) == [ReasonCode.DUPLICATE_KEY]
        assert result.reasons[0].detail["occurrences"] == 2  # type: ignore[typeddict-item]

    def test_malformed_record_skips_rules(self) -> None:
        record = SourceRecord(RelationKind.DISBURSEMENT, LineagePointer("obj-1", 1, 3), {}, malformed="expected 5 fields, got 2")
        result = QualityGate().evaluate(record, _context())

        assert _codes(result) == [ReasonCode.MALFORMED_RECORD]

    def test_every_failure_is_reported(self) -> None:
        result = QualityGate().evaluate(
            _disbursement(award_id="AW-404", amount="-1", disbursed_on="1900-01-01", payee=""),
            _context(),
        )

        assert set(_codes(result)) == {
            ReasonCode.MISSING_REFERENCE,
            ReasonCode.NEGATIVE_AMOUNT,
            ReasonCode.DATE_OUT_OF_RANGE,
        }

    def test_whitespace_only_values_are_missing(self) -> None:
        result = QualityGate().evaluate(_disbursement(disbursement_id="   "), _context())

        assert _codes(result) == [ReasonCode.MISSING_FIELD]


class TestHelpers:
    def test_count_natural_keys_skips_malformed(self) -> None:
        from fundtrace.engine.quality import count_natural_keys

        records = [
            _disbursement(),
            _disbursement(),
            SourceRecord(RelationKind.DISBURSEMENT, LineagePointer("obj-1", 1, 3), {"disbursement_id": "D-1"}, malformed="bad"),
            _disbursement(disbursement_id="D-2"),
        ]
        assert count_natural_keys(records) == {
            (RelationKind.DISBURSEMENT, "D-1"): 2,
            (RelationKind.DISBURSEMENT, "D-2"): 1,
        }

    def test_quarantined_as_error(self) -> None:
        from fundtrace.contracts.errors import ReferenceNotReadyError, ValidationFailure

        missing_parent = QualityGate().evaluate(_disbursement(award_id="AW-404"), _context())
        negative = QualityGate().evaluate(_disbursement(amount="-1"), _context())
        assert isinstance(missing_parent, Quarantined)
        assert isinstance(negative, Quarantined)

        assert isinstance(missing_parent.as_error(), ReferenceNotReadyError)
        error = negative.as_error()
        assert type(error) is ValidationFailure
        assert "negative_amount" in str(error)

    def test_gate_context_from_settings(self) -> None:
        from fundtrace.core.config import QualitySettings

        context = GateContext.from_settings(
            QualitySettings(max_future_days=10),
            as_of=date(2024, 1, 1),
            reference_exists=lambda kind, key: False,
        )
        assert context.latest_date == date(2024, 1, 11)
        assert context.batch_keys == {}
