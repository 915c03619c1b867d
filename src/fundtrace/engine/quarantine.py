# src/fundtrace/engine/quarantine.py
"""Quarantine storage: current entry per identity key plus an event log.

Writers take the unit's connection; they are only ever called inside the
transaction that also writes (or deletes) the matching silver row, which is
what keeps silver and quarantine mutually exclusive per identity key.
"""

import json
from typing import Any

from sqlalchemy import Connection, select
from sqlalchemy.engine import Row

from fundtrace.contracts.enums import QuarantineEventKind, ReasonCode
from fundtrace.contracts.errors import Reason
from fundtrace.contracts.records import LineagePointer, QuarantineEvent, QuarantineRecord
from fundtrace.core.logging import get_logger
from fundtrace.core.warehouse._database_ops import DatabaseOps
from fundtrace.core.warehouse._helpers import now
from fundtrace.core.warehouse.database import WarehouseDB
from fundtrace.core.warehouse.repositories import QuarantineEventRepository, QuarantineRecordRepository
from fundtrace.core.warehouse.schema import quarantine_events_table, quarantine_records_table

logger = get_logger(__name__)


def reasons_json(reasons: tuple[Reason, ...]) -> str:
    return json.dumps([r.to_dict() for r in reasons], sort_keys=True)


def payload_json(payload: dict[str, Any] | None) -> str | None:
    if payload is None:
        return None
    # External data: may hold values canonical JSON rejects (NaN from json.loads)
    return json.dumps(payload, sort_keys=True, default=str)


def fetch_entry(conn: Connection, identity_key: str) -> Row[Any] | None:
    return conn.execute(select(quarantine_records_table).where(quarantine_records_table.c.identity_key == identity_key)).fetchone()


def _append_event(conn: Connection, identity_key: str, kind: QuarantineEventKind, reasons: str, run_id: str | None) -> None:
    conn.execute(
        quarantine_events_table.insert().values(
            identity_key=identity_key,
            kind=kind.value,
            reasons_json=reasons,
            run_id=run_id,
            recorded_at=now(),
        )
    )


def upsert_entry(
    conn: Connection,
    *,
    identity_key: str,
    record_type: str,
    pointer: LineagePointer | None,
    reasons: tuple[Reason, ...],
    payload: dict[str, Any] | None,
    source_hash: str,
    run_id: str | None,
    existing: Row[Any] | None,
) -> bool:
    """Write the current quarantine entry for a key.

    Returns:
        False when the stored entry already says the same thing (no-op)
    """
    encoded = reasons_json(reasons)
    pointer_values = {
        "object_id": pointer.object_id if pointer is not None else None,
        "version": pointer.version if pointer is not None else None,
        "row_number": pointer.row_number if pointer is not None else None,
    }
    if (
        existing is not None
        and existing.reasons_json == encoded
        and existing.source_hash == source_hash
        and (existing.object_id, existing.version, existing.row_number) == tuple(pointer_values.values())
    ):
        return False

    awaiting = int(any(r.code == ReasonCode.MISSING_REFERENCE for r in reasons))
    timestamp = now()
    values = {
        "record_type": record_type,
        **pointer_values,
        "reasons_json": encoded,
        "awaiting_reference": awaiting,
        "payload_json": payload_json(payload),
        "source_hash": source_hash,
        "run_id": run_id,
        "updated_at": timestamp,
    }
    if existing is None:
        conn.execute(quarantine_records_table.insert().values(identity_key=identity_key, created_at=timestamp, **values))
    else:
        conn.execute(quarantine_records_table.update().where(quarantine_records_table.c.identity_key == identity_key).values(**values))
    _append_event(conn, identity_key, QuarantineEventKind.QUARANTINED, encoded, run_id)
    logger.info(
        "row_quarantined",
        identity_key=identity_key,
        record_type=record_type,
        reasons=[r.code.value for r in reasons],
    )
    return True


def release_entry(conn: Connection, identity_key: str, run_id: str | None, existing: Row[Any]) -> None:
    """Remove the current entry (the key was accepted or superseded) and log the release."""
    conn.execute(quarantine_records_table.delete().where(quarantine_records_table.c.identity_key == identity_key))
    _append_event(conn, identity_key, QuarantineEventKind.RELEASED, existing.reasons_json, run_id)
    logger.info("quarantine_released", identity_key=identity_key, record_type=existing.record_type)


class QuarantineReader:
    """Read access to quarantine state for queries and run planning."""

    def __init__(self, db: WarehouseDB) -> None:
        self._ops = DatabaseOps(db)
        self._repo = QuarantineRecordRepository()
        self._event_repo = QuarantineEventRepository()

    def get(self, identity_key: str, *, conn: Connection | None = None) -> QuarantineRecord | None:
        row = self._ops.execute_fetchone(
            select(quarantine_records_table).where(quarantine_records_table.c.identity_key == identity_key),
            conn=conn,
        )
        return self._repo.load(row) if row is not None else None

    def entries(self, record_type: str | None = None, *, conn: Connection | None = None) -> list[QuarantineRecord]:
        query = select(quarantine_records_table)
        if record_type is not None:
            query = query.where(quarantine_records_table.c.record_type == record_type)
        query = query.order_by(quarantine_records_table.c.identity_key)
        return [self._repo.load(row) for row in self._ops.execute_fetchall(query, conn=conn)]

    def history(self, identity_key: str, *, conn: Connection | None = None) -> list[QuarantineEvent]:
        query = (
            select(quarantine_events_table)
            .where(quarantine_events_table.c.identity_key == identity_key)
            .order_by(quarantine_events_table.c.event_id)
        )
        return [self._event_repo.load(row) for row in self._ops.execute_fetchall(query, conn=conn)]

    def awaiting_reference(self, *, conn: Connection | None = None) -> list[tuple[str, int]]:
        """(object_id, version) pairs holding rows that wait for a parent entity."""
        query = (
            select(quarantine_records_table.c.object_id, quarantine_records_table.c.version)
            .where(
                quarantine_records_table.c.awaiting_reference == 1,
                quarantine_records_table.c.object_id.is_not(None),
            )
            .distinct()
        )
        return [(row.object_id, row.version) for row in self._ops.execute_fetchall(query, conn=conn)]
