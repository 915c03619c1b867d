# src/fundtrace/core/warehouse/database.py
"""Connection management for the warehouse database.

SQLite serves development and tests, PostgreSQL serves production. All
engine code runs inside ``WarehouseDB.connection()`` transactions, one per
unit of work; operations that take a ``conn`` argument join the caller's
transaction, so transactions are never nested.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Self

from sqlalchemy import Connection, create_engine, event, inspect
from sqlalchemy.engine import Engine, make_url

from fundtrace.core.warehouse.schema import metadata

if TYPE_CHECKING:
    from fundtrace.core.config import WarehouseSettings

MEMORY_URL = "sqlite:///:memory:"


class SchemaCompatibilityError(Exception):
    """The warehouse file was created by an older schema."""


def _enable_sqlite_write_locking(engine: Engine) -> None:
    """Make every SQLite transaction take the write lock when it begins.

    pysqlite's implicit transaction handling is switched off and each
    ``begin`` issues BEGIN IMMEDIATE, so read-then-write units (precedence
    checks, ledger claims, watermark advances) serialize between writers.
    Connections also get WAL journaling, enforced foreign keys and a
    5 second busy timeout.
    """

    @event.listens_for(engine, "connect")
    def on_connect(dbapi_connection: object, connection_record: object) -> None:
        dbapi_connection.isolation_level = None  # type: ignore[attr-defined]
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        for pragma in ("journal_mode=WAL", "foreign_keys=ON", "busy_timeout=5000"):
            cursor.execute(f"PRAGMA {pragma}")
        cursor.close()

    @event.listens_for(engine, "begin")
    def on_begin(conn: Connection) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def _prepare_sqlite_file(url: str) -> None:
    database = make_url(url).database
    if database and database != ":memory:":
        Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)


def schema_drift(engine: Engine) -> list[str]:
    """List warehouse tables and columns missing from an existing database.

    An empty database (no warehouse tables at all) has no drift: its tables
    are about to be created.
    """
    inspector = inspect(engine)
    existing = set(inspector.get_table_names())
    if not existing & set(metadata.tables):
        return []

    drift: list[str] = []
    for name, table in sorted(metadata.tables.items()):
        if name not in existing:
            drift.append(f"table {name}")
            continue
        present = {column["name"] for column in inspector.get_columns(name)}
        drift.extend(f"column {name}.{column.name}" for column in table.columns if column.name not in present)
    return drift


class WarehouseDB:
    """Owns the SQLAlchemy engine for the warehouse.

    Example:
        with WarehouseDB.from_url("sqlite:///./state/warehouse.db") as db:
            with db.connection() as conn:
                conn.execute(raw_objects_table.select())
    """

    def __init__(self, url: str, *, create_tables: bool = True, echo: bool = False) -> None:
        self.connection_string = url
        is_sqlite = make_url(url).get_backend_name() == "sqlite"
        if is_sqlite:
            _prepare_sqlite_file(url)
        self._engine: Engine | None = create_engine(url, echo=echo)
        if is_sqlite:
            _enable_sqlite_write_locking(self._engine)
            # Postgres schemas are migrated by operators; stale local files are caught here.
            self._check_schema()
        if create_tables:
            metadata.create_all(self._engine)

    @classmethod
    def in_memory(cls) -> Self:
        """In-memory SQLite warehouse for tests.

        The default pool keeps one connection per thread, so the data is only
        visible to the creating thread. Threaded tests use a file URL.
        """
        return cls(MEMORY_URL)

    @classmethod
    def from_url(cls, url: str, *, create_tables: bool = True, echo: bool = False) -> Self:
        return cls(url, create_tables=create_tables, echo=echo)

    @classmethod
    def from_settings(cls, settings: WarehouseSettings) -> Self:
        return cls(settings.url, echo=settings.echo)

    def _check_schema(self) -> None:
        drift = schema_drift(self.engine)
        if drift:
            raise SchemaCompatibilityError(
                f"Warehouse schema at {self.connection_string} is outdated; missing "
                + ", ".join(drift)
                + ". Delete the file and let fundtrace recreate it."
            )

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Warehouse database not initialized (already closed?)")
        return self._engine

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    @contextmanager
    def connection(self) -> Iterator[Connection]:
        """Open one transaction: committed when the block exits, rolled back on error."""
        with self.engine.begin() as conn:
            yield conn

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: object) -> None:
        self.close()
