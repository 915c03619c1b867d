"""Pydantic record models and the relation registry.

Each relation kind declares a record model used to coerce external values
(strings from CSV, JSON scalars) into typed fields. Every model field is
optional: presence is a quality rule (missing_field), not a parse error, so
one evaluation can report every defect of a row at once.

TRUST BOUNDARY: these models validate "their data" (evidence) and therefore
use permissive settings (extra="ignore", strict=False).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from pydantic import BaseModel, ConfigDict

from fundtrace.contracts.enums import RelationKind


class EvidenceRecord(BaseModel):
    """Base class for relation record models."""

    model_config = ConfigDict(
        extra="ignore",
        strict=False,
        frozen=True,
        str_strip_whitespace=True,
        coerce_numbers_to_str=True,
    )


class AwardRecord(EvidenceRecord):
    award_id: str | None = None
    program_code: str | None = None
    recipient_name: str | None = None
    award_amount: Decimal | None = None
    award_date: date | None = None
    period_start: date | None = None
    period_end: date | None = None


class ObligationRecord(EvidenceRecord):
    obligation_id: str | None = None
    award_id: str | None = None
    obligated_amount: Decimal | None = None
    obligation_date: date | None = None


class DrawdownRecord(EvidenceRecord):
    drawdown_id: str | None = None
    award_id: str | None = None
    requested_amount: Decimal | None = None
    approved_amount: Decimal | None = None
    request_date: date | None = None


class DisbursementRecord(EvidenceRecord):
    disbursement_id: str | None = None
    award_id: str | None = None
    drawdown_id: str | None = None
    payee: str | None = None
    amount: Decimal | None = None
    disbursed_on: date | None = None


class InvoiceRecord(EvidenceRecord):
    invoice_id: str | None = None
    award_id: str | None = None
    vendor_name: str | None = None
    total_amount: Decimal | None = None
    invoice_date: date | None = None
    period_start: date | None = None
    period_end: date | None = None


class LineItemRecord(EvidenceRecord):
    line_item_id: str | None = None
    invoice_id: str | None = None
    description: str | None = None
    quantity: Decimal | None = None
    unit_price: Decimal | None = None
    amount: Decimal | None = None


class DocumentRecord(EvidenceRecord):
    document_id: str | None = None
    title: str | None = None
    document_type: str | None = None


@dataclass(frozen=True)
class ParentRef:
    """Foreign-key style reference to a parent relation by business key."""

    field: str
    kind: RelationKind


@dataclass(frozen=True)
class GoldMetric:
    """Declares how a relation contributes to a daily gold aggregate."""

    name: str
    amount_field: str
    date_field: str
    group_field: str


@dataclass(frozen=True)
class RelationSpec:
    """Everything the engine needs to know about one relation kind."""

    kind: RelationKind
    model: type[EvidenceRecord]
    natural_key: str
    required: tuple[str, ...]
    parent: ParentRef | None = None
    amount_fields: tuple[str, ...] = ()
    date_fields: tuple[str, ...] = ()
    date_ranges: tuple[tuple[str, str], ...] = ()
    metric: GoldMetric | None = None


RELATIONS: dict[RelationKind, RelationSpec] = {
    RelationKind.AWARD: RelationSpec(
        kind=RelationKind.AWARD,
        model=AwardRecord,
        natural_key="award_id",
        required=("award_id", "award_amount", "award_date"),
        amount_fields=("award_amount",),
        date_fields=("award_date", "period_start", "period_end"),
        date_ranges=(("period_start", "period_end"),),
        metric=GoldMetric("award_total", "award_amount", "award_date", "program_code"),
    ),
    RelationKind.OBLIGATION: RelationSpec(
        kind=RelationKind.OBLIGATION,
        model=ObligationRecord,
        natural_key="obligation_id",
        required=("obligation_id", "award_id", "obligated_amount", "obligation_date"),
        parent=ParentRef("award_id", RelationKind.AWARD),
        amount_fields=("obligated_amount",),
        date_fields=("obligation_date",),
        metric=GoldMetric("obligation_total", "obligated_amount", "obligation_date", "award_id"),
    ),
    RelationKind.DRAWDOWN: RelationSpec(
        kind=RelationKind.DRAWDOWN,
        model=DrawdownRecord,
        natural_key="drawdown_id",
        required=("drawdown_id", "award_id", "requested_amount", "request_date"),
        parent=ParentRef("award_id", RelationKind.AWARD),
        amount_fields=("requested_amount", "approved_amount"),
        date_fields=("request_date",),
        metric=GoldMetric("drawdown_requested", "requested_amount", "request_date", "award_id"),
    ),
    RelationKind.DISBURSEMENT: RelationSpec(
        kind=RelationKind.DISBURSEMENT,
        model=DisbursementRecord,
        natural_key="disbursement_id",
        required=("disbursement_id", "award_id", "amount", "disbursed_on"),
        parent=ParentRef("award_id", RelationKind.AWARD),
        amount_fields=("amount",),
        date_fields=("disbursed_on",),
        metric=GoldMetric("disbursement_total", "amount", "disbursed_on", "award_id"),
    ),
    RelationKind.INVOICE: RelationSpec(
        kind=RelationKind.INVOICE,
        model=InvoiceRecord,
        natural_key="invoice_id",
        required=("invoice_id", "award_id", "total_amount", "invoice_date"),
        parent=ParentRef("award_id", RelationKind.AWARD),
        amount_fields=("total_amount",),
        date_fields=("invoice_date", "period_start", "period_end"),
        date_ranges=(("period_start", "period_end"),),
        metric=GoldMetric("invoice_total", "total_amount", "invoice_date", "award_id"),
    ),
    RelationKind.LINE_ITEM: RelationSpec(
        kind=RelationKind.LINE_ITEM,
        model=LineItemRecord,
        natural_key="line_item_id",
        required=("line_item_id", "invoice_id", "amount"),
        parent=ParentRef("invoice_id", RelationKind.INVOICE),
        amount_fields=("quantity", "unit_price", "amount"),
    ),
    RelationKind.DOCUMENT: RelationSpec(
        kind=RelationKind.DOCUMENT,
        model=DocumentRecord,
        natural_key="document_id",
        required=("document_id",),
    ),
}

# Parents are processed before children so a single run can resolve references.
PROCESSING_ORDER: tuple[RelationKind, ...] = (
    RelationKind.AWARD,
    RelationKind.OBLIGATION,
    RelationKind.DRAWDOWN,
    RelationKind.DISBURSEMENT,
    RelationKind.INVOICE,
    RelationKind.LINE_ITEM,
    RelationKind.DOCUMENT,
)

METRICS: dict[str, RelationSpec] = {spec.metric.name: spec for spec in RELATIONS.values() if spec.metric is not None}


def relation_spec(kind: RelationKind) -> RelationSpec:
    """Look up the spec for a relation kind (crashes on unknown kinds)."""
    return RELATIONS[kind]
