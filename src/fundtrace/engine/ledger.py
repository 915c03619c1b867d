# src/fundtrace/engine/ledger.py
"""Stream dedup ledger: at-most-once effects over at-least-once delivery.

One ledger row per physical delivery position (topic, partition, offset).
The consumer claims the position, performs its side effects and commits the
claim, all on ONE connection inside ONE transaction. If the process dies
before commit the whole transaction rolls back, the claim disappears with
the side effects, and the redelivered message is processed from scratch.

A claim left uncommitted by a transaction that did commit (a caller that
claims in its own transaction) is reusable: try_claim() reclaims it and
increments attempts.
"""

from datetime import timedelta

from sqlalchemy import ColumnElement, Connection, and_, select

from fundtrace.contracts.enums import ClaimOutcome, ClaimStatus
from fundtrace.contracts.errors import DuplicateDeliveryError, WarehouseIntegrityError
from fundtrace.contracts.records import ClaimResult, StreamConsumeRecord
from fundtrace.core.logging import get_logger
from fundtrace.core.warehouse._database_ops import DatabaseOps
from fundtrace.core.warehouse._helpers import now
from fundtrace.core.warehouse.database import WarehouseDB
from fundtrace.core.warehouse.repositories import StreamConsumeRepository
from fundtrace.core.warehouse.schema import stream_ledger_table

logger = get_logger(__name__)


def _position(topic: str, partition: int, offset: int) -> ColumnElement[bool]:
    return and_(
        stream_ledger_table.c.topic == topic,
        stream_ledger_table.c.partition == partition,
        stream_ledger_table.c.offset == offset,
    )


class StreamLedger:
    """Claim/commit ledger keyed by (topic, partition, offset)."""

    def __init__(self, db: WarehouseDB) -> None:
        self._ops = DatabaseOps(db)
        self._repo = StreamConsumeRepository()

    def try_claim(self, topic: str, partition: int, offset: int, *, conn: Connection | None = None) -> ClaimResult:
        """Claim a delivery position before any side effect runs.

        Returns:
            ClaimResult with outcome CLAIMED (new or reclaimed) or
            ALREADY_PROCESSED (a committed claim exists)
        """
        with self._ops.joined(conn) as c:
            row = c.execute(select(stream_ledger_table).where(_position(topic, partition, offset)).with_for_update()).fetchone()

            if row is None:
                c.execute(
                    stream_ledger_table.insert().values(
                        topic=topic,
                        partition=partition,
                        offset=offset,
                        status=ClaimStatus.CLAIMED.value,
                        attempts=1,
                        claimed_at=now(),
                    )
                )
                return ClaimResult(ClaimOutcome.CLAIMED, topic, partition, offset, attempts=1)

            record = self._repo.load(row)
            if record.status == ClaimStatus.COMMITTED:
                return ClaimResult(ClaimOutcome.ALREADY_PROCESSED, topic, partition, offset, attempts=record.attempts)

            attempts = record.attempts + 1
            c.execute(
                stream_ledger_table.update()
                .where(_position(topic, partition, offset))
                .values(attempts=attempts, claimed_at=now())
            )
            logger.info("claim_reused", topic=topic, partition=partition, offset=offset, attempts=attempts)
            return ClaimResult(ClaimOutcome.CLAIMED, topic, partition, offset, attempts=attempts)

    def commit(self, claim: ClaimResult, *, conn: Connection, object_id: str | None = None) -> None:
        """Mark a claim committed inside the side-effect transaction.

        Raises:
            WarehouseIntegrityError: If the claim is not held (never claimed, or already committed)
        """
        if not claim.claimed:
            raise WarehouseIntegrityError(f"Cannot commit a claim that was not granted: {claim}")
        result = conn.execute(
            stream_ledger_table.update()
            .where(
                and_(
                    _position(claim.topic, claim.partition, claim.offset),
                    stream_ledger_table.c.status == ClaimStatus.CLAIMED.value,
                )
            )
            .values(status=ClaimStatus.COMMITTED.value, committed_at=now(), object_id=object_id)
        )
        if result.rowcount != 1:
            raise WarehouseIntegrityError(f"Ledger claim {claim.topic}/{claim.partition}/{claim.offset} is not held; cannot commit")

    def get(self, topic: str, partition: int, offset: int, *, conn: Connection | None = None) -> StreamConsumeRecord | None:
        row = self._ops.execute_fetchone(select(stream_ledger_table).where(_position(topic, partition, offset)), conn=conn)
        return self._repo.load(row) if row is not None else None

    def is_committed(self, topic: str, partition: int, offset: int, *, conn: Connection | None = None) -> bool:
        record = self.get(topic, partition, offset, conn=conn)
        return record is not None and record.status == ClaimStatus.COMMITTED

    def ensure_not_committed(self, topic: str, partition: int, offset: int, *, conn: Connection | None = None) -> None:
        """Detect a duplicate delivery before any side effect runs.

        Raises:
            DuplicateDeliveryError: If the position is already committed
        """
        if self.is_committed(topic, partition, offset, conn=conn):
            raise DuplicateDeliveryError(topic, partition, offset)

    def pending_claims(self, *, older_than: timedelta | None = None, conn: Connection | None = None) -> list[StreamConsumeRecord]:
        """Claims that never committed; safe to retry on redelivery."""
        query = select(stream_ledger_table).where(stream_ledger_table.c.status == ClaimStatus.CLAIMED.value)
        if older_than is not None:
            query = query.where(stream_ledger_table.c.claimed_at < now() - older_than)
        query = query.order_by(stream_ledger_table.c.topic, stream_ledger_table.c.partition, stream_ledger_table.c.offset)
        return [self._repo.load(row) for row in self._ops.execute_fetchall(query, conn=conn)]
