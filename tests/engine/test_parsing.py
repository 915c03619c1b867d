# tests/engine/test_parsing.py
"""Tests for record extraction from raw evidence bytes."""

from datetime import UTC, datetime

import pytest

from fundtrace.contracts.enums import RelationKind
from fundtrace.contracts.records import RawObject


def _obj(content_type: str = "text/csv", label: str = "awards.csv", kind: RelationKind | None = RelationKind.AWARD) -> RawObject:
    return RawObject(
        object_id="obj-1",
        version=2,
        digest="d" * 64,
        size=0,
        content_type=content_type,
        source_label=label,
        received_at=datetime(2024, 3, 1, tzinfo=UTC),
        relation_kind=kind,
    )


class TestNormalizeFieldName:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("Award Amount ($)", "award_amount"),
            ("  Award ID ", "award_id"),
            ("2024 Total", "_2024_total"),
            ("class", "class_"),
            ("payee--name", "payee_name"),
        ],
    )
    def test_normalizes(self, raw: str, expected: str) -> None:
        from fundtrace.engine.parsing import normalize_field_name

        assert normalize_field_name(raw) == expected

    def test_empty_after_normalization_raises(self) -> None:
        from fundtrace.engine.parsing import normalize_field_name

        with pytest.raises(ValueError, match="normalizes to empty"):
            normalize_field_name("$$$")


class TestCsv:
    def test_rows_are_numbered_from_one(self) -> None:
        from fundtrace.engine.parsing import parse_object

        records = parse_object(_obj(), b"Award ID,Award Amount\nAW-1,10\nAW-2,20\n")

        assert [r.pointer.row_number for r in records] == [1, 2]
        assert records[0].data == {"award_id": "AW-1", "award_amount": "10"}
        assert records[1].pointer.object_id == "obj-1"
        assert records[1].pointer.version == 2
        assert all(r.is_tabular for r in records)

    def test_blank_lines_are_skipped(self) -> None:
        from fundtrace.engine.parsing import parse_object

        records = parse_object(_obj(), b"award_id\nAW-1\n\nAW-2\n")
        assert [r.data["award_id"] for r in records] == ["AW-1", "AW-2"]
        assert [r.pointer.row_number for r in records] == [1, 2]

    def test_wrong_field_count_is_a_malformed_record(self) -> None:
        from fundtrace.engine.parsing import parse_object

        records = parse_object(_obj(), b"award_id,award_amount\nAW-1,10,extra\nAW-2,20\n")

        assert records[0].malformed == "expected 2 fields, got 3"
        assert records[0].pointer.row_number == 1
        assert records[1].malformed is None

    def test_header_collision_makes_object_malformed(self) -> None:
        from fundtrace.engine.parsing import MalformedEvidenceError, parse_object

        with pytest.raises(MalformedEvidenceError, match="collision"):
            parse_object(_obj(), b"Award ID,award_id\n1,2\n")

    def test_utf8_bom_is_stripped(self) -> None:
        from fundtrace.engine.parsing import parse_object

        records = parse_object(_obj(), "\ufeffaward_id\nAW-1\n".encode())
        assert records[0].data == {"award_id": "AW-1"}

    def test_invalid_utf8_makes_object_malformed(self) -> None:
        from fundtrace.engine.parsing import MalformedEvidenceError, parse_object

        with pytest.raises(MalformedEvidenceError, match="UTF-8"):
            parse_object(_obj(), b"award_id\n\xff\xfe\n")

    def test_empty_file_has_no_records(self) -> None:
        from fundtrace.engine.parsing import parse_object

        assert parse_object(_obj(), b"") == []


class TestJson:
    def test_single_object_is_non_tabular(self) -> None:
        from fundtrace.engine.parsing import parse_object

        records = parse_object(_obj("application/json", "award.json"), b'{"Award ID": "AW-1"}')

        assert len(records) == 1
        assert records[0].pointer.row_number is None
        assert records[0].data == {"award_id": "AW-1"}

    def test_array_is_tabular(self) -> None:
        from fundtrace.engine.parsing import parse_object

        records = parse_object(_obj("application/json", "awards.json"), b'[{"award_id": "AW-1"}, 7]')

        assert [r.pointer.row_number for r in records] == [1, 2]
        assert records[0].malformed is None
        assert records[1].malformed == "array element is int, not an object"

    def test_colliding_keys_make_single_object_malformed(self) -> None:
        from fundtrace.engine.parsing import MalformedEvidenceError, parse_object

        with pytest.raises(MalformedEvidenceError, match="Field name normalization collision"):
            parse_object(_obj("application/json", "award.json"), b'{"Award ID": "AW-1", "award_id": "AW-2"}')

    def test_colliding_keys_make_only_that_element_malformed(self) -> None:
        from fundtrace.engine.parsing import parse_object

        records = parse_object(_obj("application/json", "awards.json"), b'[{"Award ID": "AW-1", "award_id": "AW-2"}, {"award_id": "AW-3"}]')

        assert records[0].malformed is not None
        assert "collision" in records[0].malformed
        assert records[0].data == {"Award ID": "AW-1", "award_id": "AW-2"}
        assert records[1].malformed is None
        assert records[1].data == {"award_id": "AW-3"}

    def test_scalar_top_level_is_malformed(self) -> None:
        from fundtrace.engine.parsing import MalformedEvidenceError, parse_object

        with pytest.raises(MalformedEvidenceError, match="top level"):
            parse_object(_obj("application/json", "x.json"), b'"hello"')

    def test_content_type_falls_back_to_label_suffix(self) -> None:
        from fundtrace.engine.parsing import parse_object

        records = parse_object(_obj("application/octet-stream", "awards.json"), b'{"award_id": "AW-1"}')
        assert records[0].data["award_id"] == "AW-1"

    def test_unsupported_format_is_malformed(self) -> None:
        from fundtrace.engine.parsing import MalformedEvidenceError, parse_object

        with pytest.raises(MalformedEvidenceError, match="Unsupported content type"):
            parse_object(_obj("application/pdf", "awards.pdf"), b"%PDF")

    def test_missing_relation_kind_is_malformed(self) -> None:
        from fundtrace.engine.parsing import MalformedEvidenceError, parse_object

        with pytest.raises(MalformedEvidenceError, match="no relation kind"):
            parse_object(_obj(kind=None), b"award_id\nAW-1\n")


class TestDocuments:
    def test_opaque_document_gets_default_metadata(self) -> None:
        from fundtrace.engine.parsing import parse_object

        obj = _obj("application/pdf", "contracts/grant.pdf", RelationKind.DOCUMENT)
        [record] = parse_object(obj, b"%PDF-1.7 binary")

        assert record.kind == RelationKind.DOCUMENT
        assert record.data == {"document_id": "obj-1", "title": "contracts/grant.pdf", "document_type": "application/pdf"}

    def test_json_document_metadata_is_kept(self) -> None:
        from fundtrace.engine.parsing import parse_object

        obj = _obj("application/json", "grant.json", RelationKind.DOCUMENT)
        [record] = parse_object(obj, b'{"Document ID": "DOC-9", "Title": "Grant agreement"}')

        assert record.data["document_id"] == "DOC-9"
        assert record.data["title"] == "Grant agreement"


class TestMessages:
    def test_message_is_one_non_tabular_record(self) -> None:
        from fundtrace.engine.parsing import parse_message

        record = parse_message(RelationKind.DISBURSEMENT, _obj(), b'{"Disbursement ID": "D-1", "amount": 5}')

        assert record.kind == RelationKind.DISBURSEMENT
        assert record.pointer.row_number is None
        assert record.data == {"disbursement_id": "D-1", "amount": 5}

    @pytest.mark.parametrize(
        "payload",
        [b"not json", b"[1, 2]", b"\xff", b'{"Disbursement ID": "D-1", "disbursement_id": "D-2"}'],
    )
    def test_bad_payload_is_malformed(self, payload: bytes) -> None:
        from fundtrace.engine.parsing import MalformedEvidenceError, parse_message

        with pytest.raises(MalformedEvidenceError):
            parse_message(RelationKind.DISBURSEMENT, _obj(), payload)
