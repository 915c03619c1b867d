# src/fundtrace/engine/raw_store.py
"""Hash-verifying raw store: immutable, versioned raw evidence.

Bytes live in a content-addressable BlobStore keyed by SHA-256 digest.
Version metadata lives in the warehouse's raw_objects table:

- object_id is the logical identity of the source (hash of its source label)
- every put() under a label inserts version n+1, never replaces
- every read re-verifies the digest; a mismatch flags the version corrupt
  and a corrupt version is never served again
"""

import json
from datetime import UTC, date, datetime, time, timedelta

from sqlalchemy import ColumnElement, Connection, and_, func, select

from fundtrace.contracts.blob_store import BlobStore
from fundtrace.contracts.enums import ManifestStatus, RelationKind
from fundtrace.contracts.errors import ExecutionError, IntegrityError
from fundtrace.contracts.records import EvidenceMetadata, IngestManifest, RawObject
from fundtrace.core.canonical import content_digest, object_identity
from fundtrace.core.logging import get_logger
from fundtrace.core.warehouse._database_ops import DatabaseOps
from fundtrace.core.warehouse._helpers import now
from fundtrace.core.warehouse.database import WarehouseDB
from fundtrace.core.warehouse.repositories import IngestManifestRepository, RawObjectRepository
from fundtrace.core.warehouse.schema import (
    ingest_manifests_table,
    manifest_objects_table,
    raw_objects_table,
)

logger = get_logger(__name__)


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=UTC)


def received_between(since: date | None, until: date | None) -> list[ColumnElement[bool]]:
    """Conditions restricting raw_objects to a receipt-date window (inclusive)."""
    conditions: list[ColumnElement[bool]] = []
    if since is not None:
        conditions.append(raw_objects_table.c.received_at >= _day_start(since))
    if until is not None:
        conditions.append(raw_objects_table.c.received_at < _day_start(until + timedelta(days=1)))
    return conditions


class RawStore:
    """Versioned raw evidence over a BlobStore and the warehouse."""

    def __init__(self, db: WarehouseDB, blobs: BlobStore) -> None:
        self._db = db
        self._ops = DatabaseOps(db)
        self._blobs = blobs
        self._repo = RawObjectRepository()
        self._manifest_repo = IngestManifestRepository()

    # === Writes ===

    def put(self, content: bytes, metadata: EvidenceMetadata, *, conn: Connection | None = None) -> RawObject:
        """Store bytes as a new version of the object named by metadata.source_label.

        The blob is written before the version row, so a crash can leave an
        unreferenced blob but never a version row without bytes.

        Raises:
            IntegrityError: If a blob already stored under the same digest is corrupt
        """
        digest = self._blobs.store(content)
        object_id = object_identity(metadata.source_label)
        received_at = now()

        with self._ops.joined(conn) as c:
            current = c.execute(select(func.max(raw_objects_table.c.version)).where(raw_objects_table.c.object_id == object_id)).scalar()
            version = (current or 0) + 1
            c.execute(
                raw_objects_table.insert().values(
                    object_id=object_id,
                    version=version,
                    digest=digest,
                    size=len(content),
                    content_type=metadata.content_type,
                    source_label=metadata.source_label,
                    relation_kind=metadata.relation_kind.value if metadata.relation_kind is not None else None,
                    received_at=received_at,
                    corrupt=0,
                )
            )

        logger.info(
            "raw_object_stored",
            object_id=object_id,
            version=version,
            digest=digest,
            size=len(content),
            source_label=metadata.source_label,
        )
        return RawObject(
            object_id=object_id,
            version=version,
            digest=digest,
            size=len(content),
            content_type=metadata.content_type,
            source_label=metadata.source_label,
            received_at=received_at,
            relation_kind=metadata.relation_kind,
        )

    # === Verified reads ===

    def get(self, object_id: str, version: int | None = None) -> bytes:
        """Return the bytes of a version (latest by default), re-verified.

        Must not be called inside an open warehouse transaction: a failed
        verification flags the version corrupt in its own transaction.

        Raises:
            KeyError: If the object/version does not exist
            IntegrityError: If the version is corrupt or fails verification
        """
        obj = self.describe(object_id, version)
        return self.read(obj)

    def read(self, obj: RawObject) -> bytes:
        """Return verified bytes for an already-described version."""
        if obj.corrupt:
            raise IntegrityError(
                f"Raw object {obj.object_id} version {obj.version} is flagged corrupt and cannot be served",
                object_id=obj.object_id,
                version=obj.version,
            )
        try:
            return self._blobs.retrieve(obj.digest)
        except (IntegrityError, KeyError) as e:
            self._flag_corrupt(obj.digest)
            logger.error(
                "integrity_failure",
                object_id=obj.object_id,
                version=obj.version,
                digest=obj.digest,
                error=str(e),
            )
            raise IntegrityError(
                f"Raw object {obj.object_id} version {obj.version} failed verification: {e}",
                object_id=obj.object_id,
                version=obj.version,
            ) from e

    def verify(self, object_id: str, version: int | None = None) -> str:
        """Re-read a version and return its live (recomputed) digest."""
        return content_digest(self.get(object_id, version))

    def _flag_corrupt(self, digest: str) -> None:
        # Every version sharing the blob shares the corruption.
        with self._db.connection() as conn:
            conn.execute(
                raw_objects_table.update()
                .where(and_(raw_objects_table.c.digest == digest, raw_objects_table.c.corrupt == 0))
                .values(corrupt=1, corrupt_detected_at=now())
            )

    # === Metadata lookups ===

    def describe(self, object_id: str, version: int | None = None, *, conn: Connection | None = None) -> RawObject:
        """Return metadata for a version (latest when version is None).

        Raises:
            KeyError: If the object/version does not exist
        """
        query = select(raw_objects_table).where(raw_objects_table.c.object_id == object_id)
        if version is None:
            query = query.order_by(raw_objects_table.c.version.desc()).limit(1)
        else:
            query = query.where(raw_objects_table.c.version == version)
        row = self._ops.execute_fetchone(query, conn=conn)
        if row is None:
            raise KeyError(f"Raw object not found: {object_id} version {version if version is not None else 'latest'}")
        return self._repo.load(row)

    def latest(self, object_id: str, *, conn: Connection | None = None) -> RawObject:
        return self.describe(object_id, conn=conn)

    def versions(self, object_id: str, *, conn: Connection | None = None) -> list[RawObject]:
        query = select(raw_objects_table).where(raw_objects_table.c.object_id == object_id).order_by(raw_objects_table.c.version)
        return [self._repo.load(row) for row in self._ops.execute_fetchall(query, conn=conn)]

    def list_latest(
        self,
        *,
        since: date | None = None,
        until: date | None = None,
        kinds: tuple[RelationKind, ...] | None = None,
        conn: Connection | None = None,
    ) -> list[RawObject]:
        """Latest version of every object, optionally windowed by receipt date (inclusive)."""
        newest = (
            select(
                raw_objects_table.c.object_id,
                func.max(raw_objects_table.c.version).label("version"),
            )
            .group_by(raw_objects_table.c.object_id)
            .subquery()
        )
        query = select(raw_objects_table).join(
            newest,
            and_(
                raw_objects_table.c.object_id == newest.c.object_id,
                raw_objects_table.c.version == newest.c.version,
            ),
        )
        query = query.where(*received_between(since, until))
        if kinds is not None:
            query = query.where(raw_objects_table.c.relation_kind.in_([k.value for k in kinds]))
        query = query.order_by(raw_objects_table.c.received_at, raw_objects_table.c.object_id)
        return [self._repo.load(row) for row in self._ops.execute_fetchall(query, conn=conn)]

    # === Ingest manifests ===

    def submit(self, bundle_id: str, content: bytes, metadata: EvidenceMetadata) -> RawObject:
        """Store one object under an ingestion bundle, tracking the bundle's manifest.

        The manifest is created (or reopened after a failure) as pending in its
        own transaction, so a failed store still leaves a visible failed manifest.
        """
        self._open_manifest(bundle_id)
        try:
            with self._db.connection() as conn:
                obj = self.put(content, metadata, conn=conn)
                ordinal = conn.execute(
                    select(func.count()).select_from(manifest_objects_table).where(manifest_objects_table.c.bundle_id == bundle_id)
                ).scalar_one()
                conn.execute(
                    manifest_objects_table.insert().values(
                        bundle_id=bundle_id,
                        ordinal=ordinal,
                        object_id=obj.object_id,
                        version=obj.version,
                    )
                )
                conn.execute(
                    ingest_manifests_table.update()
                    .where(ingest_manifests_table.c.bundle_id == bundle_id)
                    .values(status=ManifestStatus.STORED.value, completed_at=now(), error_json=None)
                )
        except Exception as e:
            error: ExecutionError = {"exception": str(e), "type": type(e).__name__}
            self._fail_manifest(bundle_id, error)
            logger.error("bundle_failed", bundle_id=bundle_id, error=str(e))
            raise
        return obj

    def _open_manifest(self, bundle_id: str) -> None:
        with self._db.connection() as conn:
            row = conn.execute(select(ingest_manifests_table.c.status).where(ingest_manifests_table.c.bundle_id == bundle_id)).fetchone()
            if row is None:
                conn.execute(
                    ingest_manifests_table.insert().values(
                        bundle_id=bundle_id,
                        status=ManifestStatus.PENDING.value,
                        created_at=now(),
                    )
                )
            elif ManifestStatus(row.status) == ManifestStatus.FAILED:
                conn.execute(
                    ingest_manifests_table.update()
                    .where(ingest_manifests_table.c.bundle_id == bundle_id)
                    .values(status=ManifestStatus.PENDING.value, completed_at=None)
                )

    def _fail_manifest(self, bundle_id: str, error: ExecutionError) -> None:
        with self._db.connection() as conn:
            conn.execute(
                ingest_manifests_table.update()
                .where(ingest_manifests_table.c.bundle_id == bundle_id)
                .values(status=ManifestStatus.FAILED.value, completed_at=now(), error_json=json.dumps(error))
            )

    def manifest(self, bundle_id: str) -> IngestManifest:
        """Return the manifest for a bundle.

        Raises:
            KeyError: If no evidence was ever submitted under the bundle id
        """
        with self._db.connection() as conn:
            row = conn.execute(select(ingest_manifests_table).where(ingest_manifests_table.c.bundle_id == bundle_id)).fetchone()
            if row is None:
                raise KeyError(f"Unknown bundle: {bundle_id}")
            members = conn.execute(
                select(manifest_objects_table.c.object_id, manifest_objects_table.c.version)
                .where(manifest_objects_table.c.bundle_id == bundle_id)
                .order_by(manifest_objects_table.c.ordinal)
            ).fetchall()
        return self._manifest_repo.load(row, [(m.object_id, m.version) for m in members])
