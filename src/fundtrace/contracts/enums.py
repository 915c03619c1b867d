"""All status codes, modes, and kinds used across subsystem boundaries.

Values are stored as strings in the warehouse. Repositories convert them back
to these enums on read; an unknown value crashes rather than being coerced.
"""

from enum import StrEnum


class RelationKind(StrEnum):
    """Kind of normalized relation a record belongs to.

    Stored in database (silver_rows.relation_kind, raw_objects.relation_kind).
    """

    AWARD = "award"
    OBLIGATION = "obligation"
    DRAWDOWN = "drawdown"
    DISBURSEMENT = "disbursement"
    INVOICE = "invoice"
    LINE_ITEM = "line_item"
    DOCUMENT = "document"


class ManifestStatus(StrEnum):
    """Status of an ingestion bundle.

    Stored in database (ingest_manifests.status).
    """

    PENDING = "pending"
    STORED = "stored"
    FAILED = "failed"


class RunStatus(StrEnum):
    """Lifecycle state of an orchestrated transformation run.

    Stored in database (pipeline_runs.status).
    """

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RETRYING = "retrying"


class ScopeMode(StrEnum):
    """How much work a transform run or gold rollup covers.

    INCREMENTAL: only new/changed inputs since the last successful pass
    FULL: everything in the window, recomputed from scratch
    """

    INCREMENTAL = "incremental"
    FULL = "full"


class ClaimStatus(StrEnum):
    """State of a stream ledger entry.

    Stored in database (stream_ledger.status).
    """

    CLAIMED = "claimed"
    COMMITTED = "committed"


class ClaimOutcome(StrEnum):
    """Result of attempting to claim a (topic, partition, offset)."""

    CLAIMED = "claimed"
    ALREADY_PROCESSED = "already_processed"


class Delivery(StrEnum):
    """Acknowledgement returned to the broker client."""

    ACK = "ack"
    NACK = "nack"


class UnitStatus(StrEnum):
    """Outcome of one transactional unit (one source object version).

    Stored in database (object_transforms.status).
    """

    COMMITTED = "committed"
    FAILED = "failed"


class ReasonCode(StrEnum):
    """Closed set of quarantine reason codes.

    Each code has its own detail payload shape (see contracts.errors).
    """

    MISSING_FIELD = "missing_field"
    INVALID_VALUE = "invalid_value"
    MISSING_REFERENCE = "missing_reference"
    NEGATIVE_AMOUNT = "negative_amount"
    DATE_OUT_OF_RANGE = "date_out_of_range"
    INVERTED_DATE_RANGE = "inverted_date_range"
    DUPLICATE_KEY = "duplicate_key"
    MALFORMED_RECORD = "malformed_record"


class QuarantineEventKind(StrEnum):
    """Entry type in the append-only quarantine event log."""

    QUARANTINED = "quarantined"
    RELEASED = "released"


class CallStatus(StrEnum):
    """Status of a call to an external evidence model.

    Stored in database (extraction_calls.status).
    """

    STARTED = "started"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class CallKind(StrEnum):
    """Capability invoked on the external evidence model."""

    EXTRACT = "extract"
    EMBED = "embed"
