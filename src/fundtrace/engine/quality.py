# src/fundtrace/engine/quality.py
"""Quality gate: validates candidate records before they reach silver.

evaluate() returns Accepted(row) or Quarantined(reasons). Every rule runs
and every failure is accumulated, so one quarantine entry exposes all of a
record's defects at once.

Rules are pure functions of the candidate plus the GateContext; the only
committed state they see is through the context's read-only reference lookup.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from fundtrace.contracts.enums import ReasonCode, RelationKind
from fundtrace.contracts.errors import Reason, ReferenceNotReadyError, ValidationFailure
from fundtrace.contracts.records import SourceRecord
from fundtrace.contracts.relations import RelationSpec, relation_spec

if TYPE_CHECKING:
    from fundtrace.core.config import QualitySettings

# (parent kind, business key) -> parent committed in silver?
ReferenceLookup = Callable[[RelationKind, str], bool]


@dataclass(frozen=True)
class CandidateRow:
    """A record that passed every rule, typed and ready for silver."""

    kind: RelationKind
    business_key: str
    content: dict[str, Any]
    metric: str | None = None
    bucket_date: date | None = None
    group_key: str | None = None
    amount: Decimal | None = None


@dataclass(frozen=True)
class Accepted:
    row: CandidateRow


@dataclass(frozen=True)
class Quarantined:
    reasons: tuple[Reason, ...]

    @property
    def awaiting_reference(self) -> bool:
        return any(r.code == ReasonCode.MISSING_REFERENCE for r in self.reasons)

    def as_error(self) -> ValidationFailure:
        """The exception form of this result, for callers that raise on rejection."""
        if self.awaiting_reference:
            return ReferenceNotReadyError(self.reasons)
        return ValidationFailure(self.reasons)


GateResult = Accepted | Quarantined


@dataclass(frozen=True)
class GateContext:
    """Everything a rule may consult besides the candidate itself."""

    as_of: date
    earliest_date: date
    max_future_days: int
    reference_exists: ReferenceLookup
    batch_keys: Mapping[tuple[RelationKind, str], int] = field(default_factory=dict)

    @property
    def latest_date(self) -> date:
        return self.as_of + timedelta(days=self.max_future_days)

    @classmethod
    def from_settings(
        cls,
        settings: QualitySettings,
        *,
        as_of: date,
        reference_exists: ReferenceLookup,
        batch_keys: Mapping[tuple[RelationKind, str], int] | None = None,
    ) -> GateContext:
        return cls(
            as_of=as_of,
            earliest_date=settings.earliest_date,
            max_future_days=settings.max_future_days,
            reference_exists=reference_exists,
            batch_keys=batch_keys if batch_keys is not None else {},
        )


def _clean(value: Any) -> Any:
    """Blank strings are absent values."""
    if isinstance(value, str) and not value.strip():
        return None
    return value


def _key_value(value: Any) -> str | None:
    value = _clean(value)
    if value is None:
        return None
    return str(value).strip()


def count_natural_keys(records: Iterable[SourceRecord]) -> dict[tuple[RelationKind, str], int]:
    """Occurrences of each natural key in one batch, for duplicate_key detection."""
    counts: Counter[tuple[RelationKind, str]] = Counter()
    for record in records:
        if record.malformed is not None:
            continue
        key = _key_value(record.data.get(relation_spec(record.kind).natural_key))
        if key is not None:
            counts[(record.kind, key)] += 1
    return dict(counts)


# === Coercion ===


@dataclass(frozen=True)
class _Coerced:
    values: dict[str, Any]
    invalid: tuple[Reason, ...]


def _coerce(spec: RelationSpec, data: dict[str, Any]) -> _Coerced:
    """Coerce raw values through the relation's record model, field by field.

    A field that fails coercion is reported as invalid_value and dropped, so
    the remaining fields are still typed and checked by the other rules.
    """
    cleaned = {k: _clean(v) for k, v in data.items() if k in spec.model.model_fields}
    invalid: list[Reason] = []
    try:
        model = spec.model.model_validate(cleaned)
    except ValidationError as e:
        bad: set[str] = set()
        for error in e.errors():
            field_name = str(error["loc"][0]) if error["loc"] else "__root__"
            if field_name in bad:
                continue
            bad.add(field_name)
            invalid.append(
                Reason(
                    ReasonCode.INVALID_VALUE,
                    {"field": field_name, "message": error["msg"], "value": repr(cleaned.get(field_name))[:200]},
                )
            )
        model = spec.model.model_validate({k: v for k, v in cleaned.items() if k not in bad})
    return _Coerced(values=dict(model), invalid=tuple(sorted(invalid, key=lambda r: r.detail["field"])))  # type: ignore[typeddict-item]


# === Rules ===

Rule = Callable[[RelationSpec, _Coerced, GateContext], list[Reason]]


def _invalid_fields(coerced: _Coerced) -> set[str]:
    return {r.detail["field"] for r in coerced.invalid}  # type: ignore[typeddict-item]


def check_invalid_value(spec: RelationSpec, coerced: _Coerced, ctx: GateContext) -> list[Reason]:
    return list(coerced.invalid)


def check_missing_field(spec: RelationSpec, coerced: _Coerced, ctx: GateContext) -> list[Reason]:
    # A present-but-invalid required field is reported once, as invalid_value.
    invalid = _invalid_fields(coerced)
    return [
        Reason(ReasonCode.MISSING_FIELD, {"field": name})
        for name in spec.required
        if name not in invalid and coerced.values.get(name) is None
    ]


def check_missing_reference(spec: RelationSpec, coerced: _Coerced, ctx: GateContext) -> list[Reason]:
    if spec.parent is None:
        return []
    value = _key_value(coerced.values.get(spec.parent.field))
    if value is None or ctx.reference_exists(spec.parent.kind, value):
        return []
    return [
        Reason(
            ReasonCode.MISSING_REFERENCE,
            {"field": spec.parent.field, "parent_kind": spec.parent.kind.value, "value": value},
        )
    ]


def check_negative_amount(spec: RelationSpec, coerced: _Coerced, ctx: GateContext) -> list[Reason]:
    reasons = []
    for name in spec.amount_fields:
        value = coerced.values.get(name)
        if value is not None and value < 0:
            reasons.append(Reason(ReasonCode.NEGATIVE_AMOUNT, {"field": name, "value": str(value)}))
    return reasons


def check_date_range(spec: RelationSpec, coerced: _Coerced, ctx: GateContext) -> list[Reason]:
    reasons = []
    latest = ctx.latest_date
    for name in spec.date_fields:
        value = coerced.values.get(name)
        if value is not None and (value < ctx.earliest_date or value > latest):
            reasons.append(
                Reason(
                    ReasonCode.DATE_OUT_OF_RANGE,
                    {
                        "field": name,
                        "value": value.isoformat(),
                        "earliest": ctx.earliest_date.isoformat(),
                        "latest": latest.isoformat(),
                    },
                )
            )
    return reasons


def check_inverted_date_range(spec: RelationSpec, coerced: _Coerced, ctx: GateContext) -> list[Reason]:
    reasons = []
    for start_field, end_field in spec.date_ranges:
        start = coerced.values.get(start_field)
        end = coerced.values.get(end_field)
        if start is not None and end is not None and start > end:
            reasons.append(
                Reason(
                    ReasonCode.INVERTED_DATE_RANGE,
                    {
                        "start_field": start_field,
                        "end_field": end_field,
                        "start": start.isoformat(),
                        "end": end.isoformat(),
                    },
                )
            )
    return reasons


def check_duplicate_key(spec: RelationSpec, coerced: _Coerced, ctx: GateContext) -> list[Reason]:
    value = _key_value(coerced.values.get(spec.natural_key))
    if value is None:
        return []
    occurrences = ctx.batch_keys.get((spec.kind, value), 0)
    if occurrences <= 1:
        return []
    return [Reason(ReasonCode.DUPLICATE_KEY, {"field": spec.natural_key, "value": value, "occurrences": occurrences})]


RULES: tuple[Rule, ...] = (
    check_missing_field,
    check_invalid_value,
    check_missing_reference,
    check_negative_amount,
    check_date_range,
    check_inverted_date_range,
    check_duplicate_key,
)


def _build_row(spec: RelationSpec, values: dict[str, Any]) -> CandidateRow:
    content = spec.model.model_validate(values).model_dump(mode="json")
    business_key = _key_value(values[spec.natural_key])
    assert business_key is not None, "natural key is required, checked by missing_field"
    if spec.metric is None:
        return CandidateRow(kind=spec.kind, business_key=business_key, content=content)
    group = _key_value(values.get(spec.metric.group_field))
    return CandidateRow(
        kind=spec.kind,
        business_key=business_key,
        content=content,
        metric=spec.metric.name,
        bucket_date=values[spec.metric.date_field],
        group_key=group if group is not None else "",
        amount=values[spec.metric.amount_field],
    )


class QualityGate:
    """Runs every rule against a candidate and folds the results."""

    def __init__(self, rules: tuple[Rule, ...] = RULES) -> None:
        self._rules = rules

    def evaluate(self, record: SourceRecord, context: GateContext) -> GateResult:
        if record.malformed is not None:
            return Quarantined((Reason(ReasonCode.MALFORMED_RECORD, {"message": record.malformed}),))

        spec = relation_spec(record.kind)
        coerced = _coerce(spec, record.data)
        reasons: list[Reason] = []
        for rule in self._rules:
            reasons.extend(rule(spec, coerced, context))
        if reasons:
            return Quarantined(tuple(reasons))
        return Accepted(_build_row(spec, coerced.values))
