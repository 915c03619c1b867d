# src/fundtrace/core/warehouse/schema.py
"""SQLAlchemy table definitions for the warehouse.

Uses SQLAlchemy Core (not ORM) for explicit control over queries
and compatibility with multiple database backends.

Decimal amounts are stored as strings (str(Decimal)) so totals are exact on
every backend; they are never summed in SQL.
"""

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    UniqueConstraint,
)

# Shared metadata for all tables
metadata = MetaData()

# === Raw tier ===

raw_objects_table = Table(
    "raw_objects",
    metadata,
    Column("object_id", String(64), nullable=False),
    Column("version", Integer, nullable=False),
    Column("digest", String(64), nullable=False),  # SHA-256 hex, blob store key
    Column("size", Integer, nullable=False),
    Column("content_type", String(128), nullable=False),
    Column("source_label", Text, nullable=False),
    Column("relation_kind", String(32)),
    Column("received_at", DateTime(timezone=True), nullable=False),
    Column("corrupt", Integer, nullable=False, default=0),  # SQLite doesn't have Boolean, use Integer
    Column("corrupt_detected_at", DateTime(timezone=True)),
    PrimaryKeyConstraint("object_id", "version"),
)

Index("ix_raw_objects_digest", raw_objects_table.c.digest)
Index("ix_raw_objects_received", raw_objects_table.c.received_at)

ingest_manifests_table = Table(
    "ingest_manifests",
    metadata,
    Column("bundle_id", String(128), primary_key=True),
    Column("status", String(32), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("completed_at", DateTime(timezone=True)),
    Column("error_json", Text),
)

manifest_objects_table = Table(
    "manifest_objects",
    metadata,
    Column("bundle_id", String(128), ForeignKey("ingest_manifests.bundle_id"), nullable=False),
    Column("ordinal", Integer, nullable=False),
    Column("object_id", String(64), nullable=False),
    Column("version", Integer, nullable=False),
    PrimaryKeyConstraint("bundle_id", "ordinal"),
    ForeignKeyConstraint(["object_id", "version"], ["raw_objects.object_id", "raw_objects.version"]),
)

# === Silver tier ===

silver_rows_table = Table(
    "silver_rows",
    metadata,
    Column("identity_key", String(64), primary_key=True),
    Column("relation_kind", String(32), nullable=False),
    Column("business_key", Text, nullable=False),
    # Lineage pointer
    Column("object_id", String(64), nullable=False),
    Column("version", Integer, nullable=False),
    Column("row_number", Integer),  # NULL for non-tabular sources
    Column("content_json", Text, nullable=False),
    Column("content_hash", String(64), nullable=False),
    # Precedence is (version, source_hash)
    Column("source_hash", String(64), nullable=False),
    Column("revision", Integer, nullable=False),
    Column("run_id", String(64)),
    Column("first_committed_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    # Gold contribution (NULL when the relation has no metric)
    Column("metric", String(64)),
    Column("bucket_date", Date),
    Column("group_key", String(256)),
    Column("amount", String(64)),
    ForeignKeyConstraint(["object_id", "version"], ["raw_objects.object_id", "raw_objects.version"]),
)

Index("ix_silver_rows_business_key", silver_rows_table.c.relation_kind, silver_rows_table.c.business_key)
Index(
    "ix_silver_rows_bucket",
    silver_rows_table.c.metric,
    silver_rows_table.c.bucket_date,
    silver_rows_table.c.group_key,
)
Index("ix_silver_rows_object", silver_rows_table.c.object_id, silver_rows_table.c.version)

quarantine_records_table = Table(
    "quarantine_records",
    metadata,
    Column("identity_key", String(64), primary_key=True),
    Column("record_type", String(32), nullable=False),  # relation kind or "finding"
    Column("object_id", String(64)),
    Column("version", Integer),
    Column("row_number", Integer),
    Column("reasons_json", Text, nullable=False),
    Column("awaiting_reference", Integer, nullable=False, default=0),
    Column("payload_json", Text),
    Column("source_hash", String(64), nullable=False),
    Column("run_id", String(64)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    ForeignKeyConstraint(["object_id", "version"], ["raw_objects.object_id", "raw_objects.version"]),
)

Index("ix_quarantine_awaiting", quarantine_records_table.c.awaiting_reference, quarantine_records_table.c.object_id)

quarantine_events_table = Table(
    "quarantine_events",
    metadata,
    Column("event_id", Integer, primary_key=True, autoincrement=True),
    Column("identity_key", String(64), nullable=False, index=True),
    Column("kind", String(32), nullable=False),  # quarantined, released
    Column("reasons_json", Text, nullable=False),
    Column("run_id", String(64)),
    Column("recorded_at", DateTime(timezone=True), nullable=False),
)

# Pending gold work: one row per (bucket touched, silver mutation)
silver_changes_table = Table(
    "silver_changes",
    metadata,
    Column("change_id", Integer, primary_key=True, autoincrement=True),
    Column("metric", String(64), nullable=False),
    Column("bucket_date", Date, nullable=False),
    Column("group_key", String(256), nullable=False),
    Column("identity_key", String(64), nullable=False),
    Column("recorded_at", DateTime(timezone=True), nullable=False),
)

object_transforms_table = Table(
    "object_transforms",
    metadata,
    Column("object_id", String(64), nullable=False),
    Column("version", Integer, nullable=False),
    Column("status", String(32), nullable=False),  # committed, failed
    Column("run_id", String(64)),
    Column("accepted", Integer, nullable=False, default=0),
    Column("quarantined", Integer, nullable=False, default=0),
    Column("recorded_at", DateTime(timezone=True), nullable=False),
    Column("error_json", Text),
    PrimaryKeyConstraint("object_id", "version"),
    ForeignKeyConstraint(["object_id", "version"], ["raw_objects.object_id", "raw_objects.version"]),
)

# === Gold tier ===

gold_aggregates_table = Table(
    "gold_aggregates",
    metadata,
    Column("metric", String(64), nullable=False),
    Column("bucket_date", Date, nullable=False),
    Column("group_key", String(256), nullable=False),
    Column("total", String(64), nullable=False),
    Column("row_count", Integer, nullable=False),
    Column("value_hash", String(64), nullable=False),
    Column("watermark", Integer, nullable=False),
    Column("computed_at", DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint("metric", "bucket_date", "group_key"),
)

rollup_watermarks_table = Table(
    "rollup_watermarks",
    metadata,
    Column("name", String(64), primary_key=True),
    Column("watermark", Integer, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

# === Streaming ledger ===

stream_ledger_table = Table(
    "stream_ledger",
    metadata,
    Column("topic", String(255), nullable=False),
    Column("partition", Integer, nullable=False),
    Column("offset", Integer, nullable=False),
    Column("status", String(32), nullable=False),  # claimed, committed
    Column("attempts", Integer, nullable=False),
    Column("claimed_at", DateTime(timezone=True), nullable=False),
    Column("committed_at", DateTime(timezone=True)),
    Column("object_id", String(64)),
    PrimaryKeyConstraint("topic", "partition", "offset"),
)

Index("ix_stream_ledger_status", stream_ledger_table.c.status, stream_ledger_table.c.claimed_at)

# === Runs ===

pipeline_runs_table = Table(
    "pipeline_runs",
    metadata,
    Column("run_id", String(64), primary_key=True),
    Column("logical_id", String(255), nullable=False),
    Column("status", String(32), nullable=False),
    Column("attempt", Integer, nullable=False),
    Column("scope_json", Text, nullable=False),
    Column("queued_at", DateTime(timezone=True), nullable=False),
    Column("started_at", DateTime(timezone=True)),
    Column("completed_at", DateTime(timezone=True)),
    Column("counts_json", Text, nullable=False),
    Column("errors_json", Text, nullable=False),
    Column("cancel_requested", Integer, nullable=False, default=0),
    UniqueConstraint("logical_id", name="uq_pipeline_runs_logical_id"),
)

run_events_table = Table(
    "run_events",
    metadata,
    Column("event_id", Integer, primary_key=True, autoincrement=True),
    Column("run_id", String(64), ForeignKey("pipeline_runs.run_id"), nullable=False, index=True),
    Column("attempt", Integer, nullable=False),
    Column("from_status", String(32)),
    Column("to_status", String(32), nullable=False),
    Column("recorded_at", DateTime(timezone=True), nullable=False),
)

# === AI evidence ===

document_chunks_table = Table(
    "document_chunks",
    metadata,
    Column("chunk_id", String(64), primary_key=True),
    Column("object_id", String(64), nullable=False),
    Column("version", Integer, nullable=False),
    Column("object_digest", String(64), nullable=False),
    Column("ordinal", Integer, nullable=False),
    Column("byte_start", Integer, nullable=False),
    Column("byte_end", Integer, nullable=False),
    Column("chunk_digest", String(64), nullable=False),
    UniqueConstraint("object_id", "version", "ordinal"),
    ForeignKeyConstraint(["object_id", "version"], ["raw_objects.object_id", "raw_objects.version"]),
)

findings_table = Table(
    "findings",
    metadata,
    Column("finding_id", String(64), primary_key=True),
    Column("bundle_id", String(128), nullable=False, index=True),
    Column("rule_id", String(128), nullable=False),
    Column("extracted_json", Text, nullable=False),
    Column("model_name", String(128), nullable=False),
    Column("prompt_hash", String(64), nullable=False),
    Column("content_hash", String(64), nullable=False),
    Column("recorded_at", DateTime(timezone=True), nullable=False),
)

finding_evidence_table = Table(
    "finding_evidence",
    metadata,
    Column("finding_id", String(64), ForeignKey("findings.finding_id"), nullable=False),
    Column("ordinal", Integer, nullable=False),
    Column("chunk_id", String(64), ForeignKey("document_chunks.chunk_id"), nullable=False),
    PrimaryKeyConstraint("finding_id", "ordinal"),
)

extraction_calls_table = Table(
    "extraction_calls",
    metadata,
    Column("call_id", String(64), primary_key=True),
    Column("kind", String(32), nullable=False),  # extract, embed
    Column("model_name", String(128), nullable=False),
    Column("status", String(32), nullable=False),
    Column("attempts", Integer, nullable=False),
    Column("input_hash", String(64)),
    Column("started_at", DateTime(timezone=True), nullable=False),
    Column("completed_at", DateTime(timezone=True)),
    Column("error_json", Text),
)

chunk_embeddings_table = Table(
    "chunk_embeddings",
    metadata,
    Column("chunk_id", String(64), ForeignKey("document_chunks.chunk_id"), nullable=False),
    Column("model_name", String(128), nullable=False),
    Column("vector_json", Text, nullable=False),
    Column("vector_hash", String(64), nullable=False),
    Column("call_id", String(64), ForeignKey("extraction_calls.call_id"), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint("chunk_id", "model_name"),
)
