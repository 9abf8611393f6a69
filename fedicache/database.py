"""SQLite store management for fedicache.

This module provides the per-identity SQLite store with:
- Engine setup with WAL mode so readers never block the writer
- Optional at-rest encryption through a keyring-supplied connection hook
- Atomic write transactions that report which tables they touched
- Snapshot-consistent read sessions
- Index creation for timeline and thread queries

Example:
    >>> from fedicache.database import DatabaseManager
    >>>
    >>> db = DatabaseManager(database_path=settings.store_path(identity_id))
    >>> db.initialize()
    >>>
    >>> result, changed = db.write(lambda session: merge_page(session, timeline, statuses))
    >>> db.read(lambda session: load_timeline(session, timeline.id))
    >>>
    >>> db.close()
"""

import contextlib
import itertools
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

from sqlalchemy import event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import ORMExecuteState
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from fedicache.errors import StoreError
from fedicache.logging import logger

R = TypeVar("R")

ConnectionPreparer = Callable[[Any], None]


# =============================================================================
# Change Tracking
# =============================================================================


class ChangeTracker:
    """Collects the names of tables written through one session.

    Unit-of-work changes are captured after each flush, bulk ``insert``,
    ``update`` and ``delete`` statements when they execute.
    """

    def __init__(self, session: Session):
        self.tables: set[str] = set()
        event.listen(session, "after_flush", self._after_flush)
        event.listen(session, "do_orm_execute", self._on_execute)

    def _after_flush(self, session: Session, flush_context: Any) -> None:
        for obj in itertools.chain(session.new, session.dirty, session.deleted):
            table = getattr(obj, "__table__", None)
            if table is not None:
                self.tables.add(table.name)

    def _on_execute(self, state: ORMExecuteState) -> None:
        if state.is_insert or state.is_update or state.is_delete:
            self.tables.add(state.statement.table.name)  # type: ignore[attr-defined]


# =============================================================================
# Database Manager
# =============================================================================


class DatabaseManager:
    """Manages one identity's SQLite store.

    Features:
    - WAL journal so committed snapshots can be read while a write runs
    - Keyring hook applied to every new connection before any other statement
    - ``write`` runs a callable inside a single transaction (commit or rollback)
    - ``read`` runs a callable inside a read transaction (one snapshot)

    Args:
        database_path: Path to the store file (ignored when ``in_memory``)
        in_memory: Use a private in-memory database
        connection_preparer: Callable applied to each raw DB-API connection,
            e.g. to issue the cipher key pragma of an encrypted build
    """

    def __init__(
        self,
        database_path: Path | None = None,
        in_memory: bool = False,
        connection_preparer: ConnectionPreparer | None = None,
    ):
        if database_path is None and not in_memory:
            raise ValueError("database_path is required unless in_memory is set")
        self.database_path = database_path
        self.in_memory = in_memory
        self.connection_preparer = connection_preparer
        self.engine = None
        # An in-memory store is one shared connection: every access is serialized
        self._serial: threading.Lock | None = threading.Lock() if in_memory else None

    def _access(self) -> contextlib.AbstractContextManager[Any]:
        return self._serial if self._serial is not None else contextlib.nullcontext()

    def initialize(self) -> None:
        """Initialize database engine and create tables.

        This method:
        1. Creates the store directory if needed
        2. Installs the per-connection hook (keyring, pragmas)
        3. Creates all tables from SQLModel
        4. Creates indexes for common queries
        """
        import fedicache.models  # noqa: F401  registers tables on SQLModel.metadata

        try:
            if self.in_memory:
                self.engine = create_engine(
                    "sqlite://",
                    echo=False,
                    connect_args={"check_same_thread": False},
                    poolclass=StaticPool,
                )
            else:
                assert self.database_path is not None
                self.database_path.parent.mkdir(parents=True, exist_ok=True)
                self.engine = create_engine(
                    f"sqlite:///{self.database_path}",
                    echo=False,
                    connect_args={"check_same_thread": False},
                )

            event.listen(self.engine, "connect", self._on_connect)
            event.listen(self.engine, "begin", self._on_begin)

            SQLModel.metadata.create_all(self.engine)
            self.create_indexes()
        except (SQLAlchemyError, OSError) as exc:
            logger.error(f"❌ Could not open store at {self.location}: {exc}")
            raise StoreError(f"Could not open store at {self.location}") from exc

        logger.info(f"✅ Store initialized at {self.location}")

    @property
    def location(self) -> str:
        return ":memory:" if self.in_memory else str(self.database_path)

    def _on_connect(self, dbapi_connection: Any, connection_record: Any) -> None:
        if self.connection_preparer is not None:
            self.connection_preparer(dbapi_connection)

        # pysqlite defers BEGIN until the first write; issue it ourselves in _on_begin
        dbapi_connection.isolation_level = None

        cursor = dbapi_connection.cursor()
        if not self.in_memory:
            cursor.execute("PRAGMA journal_mode = WAL;")
            cursor.execute("PRAGMA synchronous = NORMAL;")
        cursor.execute("PRAGMA cache_size = -16000;")  # 16MB cache
        cursor.execute("PRAGMA temp_store = MEMORY;")
        cursor.close()

    def _on_begin(self, conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")

    def create_indexes(self) -> None:
        """Create database indexes for timeline and thread queries."""
        if self.engine is None:
            raise RuntimeError("Database not initialized")

        statements = [
            "CREATE INDEX IF NOT EXISTS idx_timeline_status_timeline "
            "ON timelinestatusjoin(timeline_id);",
            "CREATE INDEX IF NOT EXISTS idx_load_more_timeline "
            "ON loadmorerecord(timeline_id);",
            "CREATE INDEX IF NOT EXISTS idx_ancestor_parent "
            "ON statusancestorjoin(parent_id, \"index\");",
            "CREATE INDEX IF NOT EXISTS idx_descendant_parent "
            "ON statusdescendantjoin(parent_id, \"index\");",
            "CREATE INDEX IF NOT EXISTS idx_account_list_join "
            "ON accountlistjoin(account_list_id, \"index\");",
        ]
        with self.engine.connect() as conn:
            for statement in statements:
                conn.execute(text(statement))
            conn.commit()

        logger.debug("✅ Store indexes created")

    def close(self) -> None:
        """Dispose the engine and its pooled connections."""
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None

    # =========================================================================
    # Transactions
    # =========================================================================

    def write(self, work: Callable[[Session], R], operation: str = "write") -> tuple[R, set[str]]:
        """Run ``work`` inside one transaction.

        Either every statement issued by ``work`` commits or none does.

        Args:
            work: Callable receiving the transaction's session
            operation: Name used in log lines

        Returns:
            ``work``'s result and the set of table names it wrote

        Raises:
            StoreError: If the transaction failed (it has been rolled back)
        """
        if self.engine is None:
            raise RuntimeError("Database not initialized")

        try:
            with self._access(), Session(self.engine, expire_on_commit=False) as session:
                tracker = ChangeTracker(session)
                with session.begin():
                    result = work(session)
                return result, tracker.tables
        except (SQLAlchemyError, OSError) as exc:
            logger.error(f"❌ {operation} failed and was rolled back: {exc}")
            raise StoreError(f"{operation} failed") from exc

    def read(self, work: Callable[[Session], R], operation: str = "read") -> R:
        """Run ``work`` against one committed snapshot.

        Raises:
            StoreError: If a query failed
        """
        if self.engine is None:
            raise RuntimeError("Database not initialized")

        try:
            with self._access(), Session(self.engine, expire_on_commit=False) as session:
                with session.begin():
                    return work(session)
        except (SQLAlchemyError, OSError) as exc:
            logger.error(f"❌ {operation} failed: {exc}")
            raise StoreError(f"{operation} failed") from exc

    # =========================================================================
    # Files
    # =========================================================================

    @staticmethod
    def delete_files(database_path: Path) -> None:
        """Delete a store file and its WAL/SHM siblings."""
        for suffix in ("", "-wal", "-shm"):
            candidate = database_path.with_name(database_path.name + suffix)
            candidate.unlink(missing_ok=True)


__all__ = ["DatabaseManager", "ChangeTracker", "ConnectionPreparer"]
