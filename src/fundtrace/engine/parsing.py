# src/fundtrace/engine/parsing.py
"""Record extraction from raw evidence bytes.

Turns one raw object version into candidate SourceRecords:

- CSV exports and JSON arrays are tabular: one record per data row,
  numbered from 1
- a single JSON object (including a streaming message) is one non-tabular
  record
- a document yields one non-tabular record whose natural key defaults to
  the object id

Headers are normalized to identifiers at this boundary so downstream record
models see stable field names. Rows that cannot be read are returned as
malformed records rather than dropped.
"""

from __future__ import annotations

import csv
import io
import json
import keyword
import re
import unicodedata
from typing import Any

from fundtrace.contracts.enums import RelationKind
from fundtrace.contracts.records import LineagePointer, RawObject, SourceRecord

_NON_IDENTIFIER_CHARS = re.compile(r"[^\w]+")
_CONSECUTIVE_UNDERSCORES = re.compile(r"_+")

_JSON_TYPES = frozenset({"application/json", "text/json"})
_CSV_TYPES = frozenset({"text/csv", "application/csv"})


class MalformedEvidenceError(ValueError):
    """The object as a whole could not be parsed into records."""


def normalize_field_name(raw: str) -> str:
    """Normalize a messy header to a valid Python identifier.

    "Award Amount ($)" -> "award_amount", "2024 Total" -> "_2024_total".

    Raises:
        ValueError: If header normalizes to empty string
    """
    normalized = unicodedata.normalize("NFC", raw).strip().lower()
    normalized = _NON_IDENTIFIER_CHARS.sub("_", normalized)
    normalized = _CONSECUTIVE_UNDERSCORES.sub("_", normalized).strip("_")
    if normalized and normalized[0].isdigit():
        normalized = f"_{normalized}"
    if keyword.iskeyword(normalized):
        normalized = f"{normalized}_"
    if not normalized:
        raise ValueError(f"Header '{raw}' normalizes to empty string")
    return normalized


def _normalize_names(raw_names: list[str], what: str) -> list[str]:
    """Normalize CSV headers or JSON keys, rejecting names that collapse together."""
    try:
        normalized = [normalize_field_name(n) for n in raw_names]
    except ValueError as e:
        raise MalformedEvidenceError(str(e)) from e
    seen: dict[str, list[str]] = {}
    for raw, norm in zip(raw_names, normalized, strict=True):
        seen.setdefault(norm, []).append(raw)
    collisions = {norm: raws for norm, raws in seen.items() if len(raws) > 1}
    if collisions:
        details = "; ".join(f"{raws} -> '{norm}'" for norm, raws in sorted(collisions.items()))
        raise MalformedEvidenceError(f"{what} normalization collision: {details}")
    return normalized


def detect_format(content_type: str, source_label: str) -> str:
    """Return "csv" or "json" from the declared content type, falling back to the label suffix."""
    media = content_type.split(";")[0].strip().lower()
    if media in _CSV_TYPES:
        return "csv"
    if media in _JSON_TYPES:
        return "json"
    label = source_label.lower()
    if label.endswith(".csv"):
        return "csv"
    if label.endswith(".json"):
        return "json"
    raise MalformedEvidenceError(f"Unsupported content type {content_type!r} for {source_label!r}")


def _decode(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise MalformedEvidenceError(f"Content is not valid UTF-8: {e}") from e


def _parse_csv(kind: RelationKind, obj: RawObject, text: str) -> list[SourceRecord]:
    reader = csv.reader(io.StringIO(text, newline=""))
    try:
        raw_headers = next(reader)
    except StopIteration:
        return []
    except csv.Error as e:
        raise MalformedEvidenceError(f"CSV header could not be parsed: {e}") from e
    headers = _normalize_names(raw_headers, "Header")

    records: list[SourceRecord] = []
    row_number = 0
    while True:
        try:
            values = next(reader)
        except StopIteration:
            break
        except csv.Error as e:
            row_number += 1
            pointer = LineagePointer(obj.object_id, obj.version, row_number)
            records.append(SourceRecord(kind, pointer, {}, malformed=f"CSV parse error at line {reader.line_num}: {e}"))
            continue

        # csv.reader returns [] for blank lines
        if not values:
            continue

        row_number += 1
        pointer = LineagePointer(obj.object_id, obj.version, row_number)
        if len(values) != len(headers):
            records.append(
                SourceRecord(
                    kind,
                    pointer,
                    {"__raw_line__": ",".join(values)},
                    malformed=f"expected {len(headers)} fields, got {len(values)}",
                )
            )
            continue
        records.append(SourceRecord(kind, pointer, dict(zip(headers, values, strict=True))))
    return records


def _normalize_keys(data: dict[str, Any]) -> dict[str, Any]:
    keys = _normalize_names([str(k) for k in data], "Field name")
    return dict(zip(keys, data.values(), strict=True))


def _parse_json(kind: RelationKind, obj: RawObject, text: str) -> list[SourceRecord]:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedEvidenceError(f"Invalid JSON: {e}") from e

    if isinstance(parsed, dict):
        return [SourceRecord(kind, LineagePointer(obj.object_id, obj.version, None), _normalize_keys(parsed))]

    if isinstance(parsed, list):
        records: list[SourceRecord] = []
        for index, item in enumerate(parsed, start=1):
            pointer = LineagePointer(obj.object_id, obj.version, index)
            if isinstance(item, dict):
                try:
                    records.append(SourceRecord(kind, pointer, _normalize_keys(item)))
                except MalformedEvidenceError as e:
                    records.append(SourceRecord(kind, pointer, {str(k): v for k, v in item.items()}, malformed=str(e)))
            else:
                records.append(
                    SourceRecord(kind, pointer, {"__value__": repr(item)}, malformed=f"array element is {type(item).__name__}, not an object")
                )
        return records

    raise MalformedEvidenceError(f"JSON top level must be an object or array, got {type(parsed).__name__}")


def _parse_document(obj: RawObject, content: bytes) -> list[SourceRecord]:
    data: dict[str, Any] = {}
    try:
        if detect_format(obj.content_type, obj.source_label) == "json":
            parsed = json.loads(_decode(content))
            if isinstance(parsed, dict):
                data = _normalize_keys(parsed)
    except (MalformedEvidenceError, json.JSONDecodeError):
        # Documents are opaque bytes unless they carry JSON metadata.
        data = {}
    data.setdefault("document_id", obj.object_id)
    data.setdefault("title", obj.source_label)
    data.setdefault("document_type", obj.content_type)
    return [SourceRecord(RelationKind.DOCUMENT, LineagePointer(obj.object_id, obj.version, None), data)]


def parse_object(obj: RawObject, content: bytes) -> list[SourceRecord]:
    """Extract candidate records from verified bytes of a raw object version.

    Raises:
        MalformedEvidenceError: If the object has no relation kind or cannot be parsed at all
    """
    kind = obj.relation_kind
    if kind is None:
        raise MalformedEvidenceError(f"Raw object {obj.source_label!r} declares no relation kind")
    if kind == RelationKind.DOCUMENT:
        return _parse_document(obj, content)

    fmt = detect_format(obj.content_type, obj.source_label)
    text = _decode(content)
    if fmt == "csv":
        return _parse_csv(kind, obj, text)
    return _parse_json(kind, obj, text)


def parse_message(kind: RelationKind, obj: RawObject, content: bytes) -> SourceRecord:
    """Extract the single non-tabular record carried by a streaming message.

    Raises:
        MalformedEvidenceError: If the payload is not one JSON object
    """
    try:
        parsed = json.loads(_decode(content))
    except json.JSONDecodeError as e:
        raise MalformedEvidenceError(f"Invalid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise MalformedEvidenceError(f"Message payload must be a JSON object, got {type(parsed).__name__}")
    return SourceRecord(kind, LineagePointer(obj.object_id, obj.version, None), _normalize_keys(parsed))
