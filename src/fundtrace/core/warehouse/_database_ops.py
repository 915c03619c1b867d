"""Database operation helpers to reduce boilerplate in engine components.

Consolidates the repeated "join the caller's transaction or open one"
pattern. Components take an optional ``conn``; passing one makes the call
part of the caller's unit, omitting it gives the call its own transaction.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import Connection, Executable
from sqlalchemy.engine import Row

if TYPE_CHECKING:
    from fundtrace.core.warehouse.database import WarehouseDB


class DatabaseOps:
    """Helper for common database operations."""

    def __init__(self, db: "WarehouseDB") -> None:
        self._db = db

    @contextmanager
    def joined(self, conn: Connection | None) -> Iterator[Connection]:
        """Yield the caller's connection, or a fresh transaction when there is none."""
        if conn is not None:
            yield conn
            return
        with self._db.connection() as own:
            yield own

    def execute_fetchone(self, query: Executable, *, conn: Connection | None = None) -> Row[Any] | None:
        """Execute query and return single row or None."""
        with self.joined(conn) as c:
            return c.execute(query).fetchone()

    def execute_fetchall(self, query: Executable, *, conn: Connection | None = None) -> list[Row[Any]]:
        """Execute query and return all rows."""
        with self.joined(conn) as c:
            return list(c.execute(query).fetchall())

    def execute_insert(self, stmt: Executable, *, conn: Connection | None = None) -> None:
        """Execute insert statement.

        Raises:
            ValueError: If zero rows are affected
        """
        with self.joined(conn) as c:
            result = c.execute(stmt)
            if result.rowcount == 0:
                raise ValueError("execute_insert: zero rows affected - warehouse write failed (missing parent row or constraint violation)")

    def execute_update(self, stmt: Executable, *, conn: Connection | None = None) -> None:
        """Execute update statement.

        Raises:
            ValueError: If zero rows are affected
        """
        with self.joined(conn) as c:
            result = c.execute(stmt)
            if result.rowcount == 0:
                raise ValueError("execute_update: zero rows affected - target row does not exist (warehouse corruption)")
