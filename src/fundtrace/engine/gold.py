# src/fundtrace/engine/gold.py
"""Gold rollup: daily aggregates recomputed from silver.

Every cell (metric, day bucket, group) is computed by one function over the
silver rows currently in that bucket, whichever mode triggered it:

- FULL recomputes every bucket in the scope, including buckets whose last
  contributing row left silver (their cell is deleted).
- INCREMENTAL recomputes only the buckets named in the silver change log,
  then consumes exactly the change rows it read and advances the watermark,
  all in the same transaction.

Since both modes share the cell function and the change log is consumed
atomically with the cell writes, an incremental pass always lands on the
same values a full recompute would produce.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any

from sqlalchemy import Connection, and_, select

from fundtrace.contracts.enums import ScopeMode
from fundtrace.contracts.records import GoldAggregate, GoldCellRef, GoldScope, NormalizedRow
from fundtrace.contracts.relations import METRICS
from fundtrace.core.canonical import stable_hash
from fundtrace.core.logging import get_logger
from fundtrace.core.warehouse._database_ops import DatabaseOps
from fundtrace.core.warehouse._helpers import now
from fundtrace.core.warehouse.database import WarehouseDB
from fundtrace.core.warehouse.repositories import GoldAggregateRepository, NormalizedRowRepository
from fundtrace.core.warehouse.schema import (
    gold_aggregates_table,
    rollup_watermarks_table,
    silver_changes_table,
    silver_rows_table,
)

logger = get_logger(__name__)

WATERMARK_NAME = "gold"

Bucket = tuple[str, date, str]


def cell_value_hash(metric: str, bucket_date: date, group_key: str, total: Decimal, row_count: int) -> str:
    return stable_hash(
        {
            "metric": metric,
            "bucket_date": bucket_date.isoformat(),
            "group_key": group_key,
            "total": str(total),
            "row_count": row_count,
        }
    )


def _scoped(query: Any, table: Any, scope: GoldScope) -> Any:
    if scope.metrics is not None:
        query = query.where(table.c.metric.in_(scope.metrics))
    if scope.start is not None:
        query = query.where(table.c.bucket_date >= scope.start)
    if scope.end is not None:
        query = query.where(table.c.bucket_date <= scope.end)
    return query


def _unknown_metrics(scope: GoldScope) -> list[str]:
    return [m for m in scope.metrics or () if m not in METRICS]


class GoldRollup:
    """Recomputes and serves gold aggregate cells."""

    def __init__(self, db: WarehouseDB) -> None:
        self._db = db
        self._ops = DatabaseOps(db)
        self._repo = GoldAggregateRepository()
        self._row_repo = NormalizedRowRepository()

    def recompute(self, scope: GoldScope, *, conn: Connection | None = None) -> list[GoldAggregate]:
        """Recompute the cells selected by scope.

        Returns:
            The recomputed cells that still exist, ordered by cell address

        Raises:
            ValueError: If the scope names an unknown metric
        """
        unknown = _unknown_metrics(scope)
        if unknown:
            raise ValueError(f"Unknown gold metric(s): {', '.join(unknown)}")

        with self._ops.joined(conn) as c:
            if scope.mode == ScopeMode.FULL:
                buckets = self._full_buckets(c, scope)
                consumed: list[int] = []
            else:
                buckets, consumed = self._changed_buckets(c, scope)

            watermark = self._read_watermark(c)
            if consumed:
                watermark = max(watermark, max(consumed))
                c.execute(silver_changes_table.delete().where(silver_changes_table.c.change_id.in_(consumed)))
                self._write_watermark(c, watermark)

            results = [cell for cell in (self._recompute_cell(c, bucket, watermark) for bucket in sorted(buckets)) if cell is not None]

        logger.info(
            "gold_recomputed",
            mode=scope.mode.value,
            buckets=len(buckets),
            cells=len(results),
            changes_consumed=len(consumed),
            watermark=watermark,
        )
        return results

    def _full_buckets(self, conn: Connection, scope: GoldScope) -> set[Bucket]:
        in_silver = conn.execute(
            _scoped(
                select(silver_rows_table.c.metric, silver_rows_table.c.bucket_date, silver_rows_table.c.group_key)
                .where(silver_rows_table.c.metric.is_not(None))
                .distinct(),
                silver_rows_table,
                scope,
            )
        ).fetchall()
        in_gold = conn.execute(
            _scoped(
                select(gold_aggregates_table.c.metric, gold_aggregates_table.c.bucket_date, gold_aggregates_table.c.group_key),
                gold_aggregates_table,
                scope,
            )
        ).fetchall()
        return {(r.metric, r.bucket_date, r.group_key) for r in [*in_silver, *in_gold]}

    def _changed_buckets(self, conn: Connection, scope: GoldScope) -> tuple[set[Bucket], list[int]]:
        changes = conn.execute(
            _scoped(select(silver_changes_table), silver_changes_table, scope).order_by(silver_changes_table.c.change_id).with_for_update()
        ).fetchall()
        buckets = {(r.metric, r.bucket_date, r.group_key) for r in changes}
        return buckets, [r.change_id for r in changes]

    def _recompute_cell(self, conn: Connection, bucket: Bucket, watermark: int) -> GoldAggregate | None:
        metric, bucket_date, group_key = bucket
        amounts = conn.execute(
            select(silver_rows_table.c.amount).where(
                silver_rows_table.c.metric == metric,
                silver_rows_table.c.bucket_date == bucket_date,
                silver_rows_table.c.group_key == group_key,
            )
        ).scalars()
        total = Decimal(0)
        row_count = 0
        for amount in amounts:
            total += Decimal(amount)
            row_count += 1

        key = and_(
            gold_aggregates_table.c.metric == metric,
            gold_aggregates_table.c.bucket_date == bucket_date,
            gold_aggregates_table.c.group_key == group_key,
        )
        existing = conn.execute(select(gold_aggregates_table).where(key)).fetchone()

        if row_count == 0:
            if existing is not None:
                conn.execute(gold_aggregates_table.delete().where(key))
                logger.debug("gold_cell_removed", metric=metric, bucket_date=bucket_date.isoformat(), group_key=group_key)
            return None

        value_hash = cell_value_hash(metric, bucket_date, group_key, total, row_count)
        if existing is not None and existing.value_hash == value_hash:
            return self._repo.load(existing)

        timestamp = now()
        values = {
            "total": str(total),
            "row_count": row_count,
            "value_hash": value_hash,
            "watermark": watermark,
            "computed_at": timestamp,
        }
        if existing is None:
            conn.execute(gold_aggregates_table.insert().values(metric=metric, bucket_date=bucket_date, group_key=group_key, **values))
        else:
            conn.execute(gold_aggregates_table.update().where(key).values(**values))
        return GoldAggregate(
            metric=metric,
            bucket_date=bucket_date,
            group_key=group_key,
            total=total,
            row_count=row_count,
            value_hash=value_hash,
            watermark=watermark,
            computed_at=timestamp,
        )

    @staticmethod
    def _read_watermark(conn: Connection) -> int:
        value = conn.execute(
            select(rollup_watermarks_table.c.watermark).where(rollup_watermarks_table.c.name == WATERMARK_NAME)
        ).scalar()
        return value if value is not None else 0

    @staticmethod
    def _write_watermark(conn: Connection, watermark: int) -> None:
        updated = conn.execute(
            rollup_watermarks_table.update()
            .where(rollup_watermarks_table.c.name == WATERMARK_NAME)
            .values(watermark=watermark, updated_at=now())
        )
        if updated.rowcount == 0:
            conn.execute(rollup_watermarks_table.insert().values(name=WATERMARK_NAME, watermark=watermark, updated_at=now()))

    # === Reads ===

    def get(self, scope: GoldScope, *, conn: Connection | None = None) -> list[GoldAggregate]:
        """Stored cells inside scope, ordered by cell address (mode is ignored)."""
        query = _scoped(select(gold_aggregates_table), gold_aggregates_table, scope).order_by(
            gold_aggregates_table.c.metric,
            gold_aggregates_table.c.bucket_date,
            gold_aggregates_table.c.group_key,
        )
        return [self._repo.load(row) for row in self._ops.execute_fetchall(query, conn=conn)]

    def get_cell(self, cell: GoldCellRef, *, conn: Connection | None = None) -> GoldAggregate | None:
        row = self._ops.execute_fetchone(
            select(gold_aggregates_table).where(
                gold_aggregates_table.c.metric == cell.metric,
                gold_aggregates_table.c.bucket_date == cell.bucket_date,
                gold_aggregates_table.c.group_key == cell.group_key,
            ),
            conn=conn,
        )
        return self._repo.load(row) if row is not None else None

    def snapshot(self, *, conn: Connection | None = None) -> dict[Bucket, tuple[str, int, str]]:
        """Every cell as {address: (total, row_count, value_hash)}, for equivalence checks."""
        return {(a.metric, a.bucket_date, a.group_key): (str(a.total), a.row_count, a.value_hash) for a in self.get(GoldScope(), conn=conn)}

    def watermark(self, *, conn: Connection | None = None) -> int:
        """Highest silver change id consumed by an incremental pass."""
        with self._ops.joined(conn) as c:
            return self._read_watermark(c)

    def pending_changes(self, *, conn: Connection | None = None) -> int:
        rows = self._ops.execute_fetchall(select(silver_changes_table.c.change_id), conn=conn)
        return len(rows)

    def contributing_rows(self, cell: GoldCellRef, *, conn: Connection | None = None) -> list[NormalizedRow]:
        """Silver rows currently summed into a cell."""
        query = (
            select(silver_rows_table)
            .where(
                silver_rows_table.c.metric == cell.metric,
                silver_rows_table.c.bucket_date == cell.bucket_date,
                silver_rows_table.c.group_key == cell.group_key,
            )
            .order_by(silver_rows_table.c.identity_key)
        )
        return [self._row_repo.load(row) for row in self._ops.execute_fetchall(query, conn=conn)]

