# src/fundtrace/engine/runs.py
"""Run lifecycle tracking for orchestrated transformation runs.

A logical run (identified by the orchestrator's logical_id) has exactly one
pipeline_runs row. Retries and forced re-runs move the same row through the
lifecycle again with an incremented attempt number; every transition is
appended to run_events.

    queued -> running -> succeeded | failed | cancelled
    failed | cancelled -> retrying -> running
    succeeded -> queued            (forced re-run only)
"""

from __future__ import annotations

import json

from sqlalchemy import Connection, select
from sqlalchemy.exc import IntegrityError as UniqueViolation

from fundtrace.contracts.enums import RunStatus
from fundtrace.contracts.errors import ConcurrentRunConflict, ExecutionError, InvalidRunTransition, WarehouseIntegrityError
from fundtrace.contracts.records import PipelineRun, RunCounts, RunEvent, TransformScope
from fundtrace.core.logging import get_logger
from fundtrace.core.warehouse._database_ops import DatabaseOps
from fundtrace.core.warehouse._helpers import generate_id, now
from fundtrace.core.warehouse.database import WarehouseDB
from fundtrace.core.warehouse.repositories import PipelineRunRepository, RunEventRepository
from fundtrace.core.warehouse.schema import pipeline_runs_table, run_events_table

logger = get_logger(__name__)

_TRANSITIONS: dict[RunStatus | None, frozenset[RunStatus]] = {
    None: frozenset({RunStatus.QUEUED}),
    RunStatus.QUEUED: frozenset({RunStatus.RUNNING, RunStatus.CANCELLED}),
    RunStatus.RUNNING: frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED}),
    RunStatus.FAILED: frozenset({RunStatus.RETRYING}),
    RunStatus.CANCELLED: frozenset({RunStatus.RETRYING}),
    RunStatus.RETRYING: frozenset({RunStatus.RUNNING}),
    RunStatus.SUCCEEDED: frozenset({RunStatus.QUEUED}),
}

_TERMINAL_RUN_STATUSES = frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED})
_ACTIVE_RUN_STATUSES = frozenset({RunStatus.QUEUED, RunStatus.RUNNING, RunStatus.RETRYING})


def check_transition(current: RunStatus | None, target: RunStatus) -> None:
    """Raises InvalidRunTransition if the lifecycle has no current -> target edge."""
    if target not in _TRANSITIONS[current]:
        raise InvalidRunTransition(f"Run cannot move from {current.value if current else 'new'!r} to {target.value!r}")


class RunTracker:
    """Records run lifecycle transitions in the warehouse."""

    def __init__(self, db: WarehouseDB) -> None:
        self._db = db
        self._ops = DatabaseOps(db)
        self._repo = PipelineRunRepository()
        self._event_repo = RunEventRepository()

    def start(self, logical_id: str, scope: TransformScope, *, force: bool = False) -> PipelineRun:
        """Move the logical run to running, creating it on first use.

        Args:
            logical_id: Orchestrator-supplied identity of the run
            scope: What the run covers (stored with the attempt)
            force: Re-run a logical run that already succeeded

        Returns:
            The run in status RUNNING, or the untouched SUCCEEDED run when the
            logical run already succeeded and force is False (a replay)

        Raises:
            ConcurrentRunConflict: If the logical run is currently active
        """
        try:
            with self._db.connection() as conn:
                row = conn.execute(select(pipeline_runs_table).where(pipeline_runs_table.c.logical_id == logical_id).with_for_update()).fetchone()
                if row is None:
                    run = self._create(conn, logical_id, scope)
                else:
                    run = self._repo.load(row)
                    if run.status in _ACTIVE_RUN_STATUSES:
                        raise ConcurrentRunConflict(logical_id, run.run_id)
                    if run.status == RunStatus.SUCCEEDED and not force:
                        logger.info("run_replayed", run_id=run.run_id, logical_id=logical_id, attempt=run.attempt)
                        return run
                    self._reopen(conn, run, scope)
        except UniqueViolation:
            # Another starter inserted the logical run between our read and insert.
            current = self.get_by_logical_id(logical_id)
            if current is None:
                raise
            raise ConcurrentRunConflict(logical_id, current.run_id) from None

        return self._reload(run.run_id)

    def _create(self, conn: Connection, logical_id: str, scope: TransformScope) -> PipelineRun:
        run = PipelineRun(
            run_id=generate_id(),
            logical_id=logical_id,
            status=RunStatus.QUEUED,
            attempt=1,
            scope=scope,
            queued_at=now(),
        )
        conn.execute(
            pipeline_runs_table.insert().values(
                run_id=run.run_id,
                logical_id=logical_id,
                status=run.status.value,
                attempt=run.attempt,
                scope_json=json.dumps(scope.to_dict()),
                queued_at=run.queued_at,
                counts_json=json.dumps(run.counts.to_dict()),
                errors_json="[]",
                cancel_requested=0,
            )
        )
        self._append_event(conn, run, None, RunStatus.QUEUED)
        self._transition(conn, run, RunStatus.RUNNING)
        logger.info("run_created", run_id=run.run_id, logical_id=logical_id)
        return run

    def _reopen(self, conn: Connection, run: PipelineRun, scope: TransformScope) -> None:
        reopen = RunStatus.QUEUED if run.status == RunStatus.SUCCEEDED else RunStatus.RETRYING
        run.attempt += 1
        conn.execute(
            pipeline_runs_table.update()
            .where(pipeline_runs_table.c.run_id == run.run_id)
            .values(
                attempt=run.attempt,
                scope_json=json.dumps(scope.to_dict()),
                counts_json=json.dumps(RunCounts().to_dict()),
                errors_json="[]",
                completed_at=None,
                cancel_requested=0,
            )
        )
        self._transition(conn, run, reopen)
        self._transition(conn, run, RunStatus.RUNNING)
        logger.info("run_reopened", run_id=run.run_id, logical_id=run.logical_id, attempt=run.attempt, via=reopen.value)

    def _transition(self, conn: Connection, run: PipelineRun, target: RunStatus) -> None:
        check_transition(run.status, target)
        values: dict[str, object] = {"status": target.value}
        if target == RunStatus.RUNNING:
            values["started_at"] = now()
        elif target in _TERMINAL_RUN_STATUSES:
            values["completed_at"] = now()
        conn.execute(pipeline_runs_table.update().where(pipeline_runs_table.c.run_id == run.run_id).values(**values))
        self._append_event(conn, run, run.status, target)
        run.status = target

    @staticmethod
    def _append_event(conn: Connection, run: PipelineRun, from_status: RunStatus | None, to_status: RunStatus) -> None:
        conn.execute(
            run_events_table.insert().values(
                run_id=run.run_id,
                attempt=run.attempt,
                from_status=from_status.value if from_status is not None else None,
                to_status=to_status.value,
                recorded_at=now(),
            )
        )

    def complete(self, run: PipelineRun, outcome: RunStatus, *, errors: list[ExecutionError] | None = None) -> PipelineRun:
        """Record the terminal outcome of a running run with its counts and errors.

        Raises:
            InvalidRunTransition: If outcome is not terminal or the run is not running
        """
        if outcome not in _TERMINAL_RUN_STATUSES:
            raise InvalidRunTransition(f"complete() requires a terminal status, got {outcome.value!r}")

        with self._db.connection() as conn:
            current = conn.execute(
                select(pipeline_runs_table.c.status).where(pipeline_runs_table.c.run_id == run.run_id).with_for_update()
            ).fetchone()
            if current is None:
                raise WarehouseIntegrityError(f"Run {run.run_id} vanished while running")
            run.status = RunStatus(current.status)
            if errors is not None:
                run.errors = list(errors)
            conn.execute(
                pipeline_runs_table.update()
                .where(pipeline_runs_table.c.run_id == run.run_id)
                .values(counts_json=json.dumps(run.counts.to_dict()), errors_json=json.dumps(run.errors))
            )
            self._transition(conn, run, outcome)

        logger.info(
            "run_completed",
            run_id=run.run_id,
            logical_id=run.logical_id,
            status=outcome.value,
            attempt=run.attempt,
            **run.counts.to_dict(),
        )
        return self._reload(run.run_id)

    def request_cancel(self, run_id: str) -> None:
        """Ask a running run to stop at its next unit boundary.

        Raises:
            KeyError: If the run does not exist
        """
        with self._db.connection() as conn:
            result = conn.execute(pipeline_runs_table.update().where(pipeline_runs_table.c.run_id == run_id).values(cancel_requested=1))
            if result.rowcount == 0:
                raise KeyError(f"Unknown run: {run_id}")
        logger.info("run_cancel_requested", run_id=run_id)

    def is_cancel_requested(self, run: PipelineRun) -> bool:
        flag = self._ops.execute_fetchone(select(pipeline_runs_table.c.cancel_requested).where(pipeline_runs_table.c.run_id == run.run_id))
        return flag is not None and bool(flag.cancel_requested)

    def get(self, run_id: str) -> PipelineRun | None:
        row = self._ops.execute_fetchone(select(pipeline_runs_table).where(pipeline_runs_table.c.run_id == run_id))
        return self._repo.load(row) if row is not None else None

    def get_by_logical_id(self, logical_id: str) -> PipelineRun | None:
        row = self._ops.execute_fetchone(select(pipeline_runs_table).where(pipeline_runs_table.c.logical_id == logical_id))
        return self._repo.load(row) if row is not None else None

    def events(self, run_id: str) -> list[RunEvent]:
        query = select(run_events_table).where(run_events_table.c.run_id == run_id).order_by(run_events_table.c.event_id)
        return [self._event_repo.load(row) for row in self._ops.execute_fetchall(query)]

    def _reload(self, run_id: str) -> PipelineRun:
        run = self.get(run_id)
        if run is None:
            raise WarehouseIntegrityError(f"Run {run_id} not found after INSERT/UPDATE - database corruption or transaction failure")
        return run
