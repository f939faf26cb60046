"""
SQLite database manager and transaction handles.

The domain engine never talks to a connection directly; it is always handed a
``Transaction``. A transaction owns one connection for its whole lifetime, is
used by exactly one call chain, and runs registered ``on_commit`` callbacks
only after the commit succeeded.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator, Callable, Iterator, Sequence
from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import TYPE_CHECKING, Any

from domain_engine.runtime.errors import InternalError
from domain_engine.runtime.query_builder import quote_identifier

if TYPE_CHECKING:
    from domain_engine.specs.entity import EntitySpec, FieldSpec
    from domain_engine.specs.registry import EntityRegistry, JunctionTable

logger = logging.getLogger(__name__)

CommitCallback = Callable[[], None]

# Transaction the running task is inside of; a nested call with no tx joins it
_current_transaction: ContextVar[Transaction | None] = ContextVar(
    "domain_engine_transaction", default=None
)


# =============================================================================
# SQLite Type Mapping
# =============================================================================


def _field_to_sqlite_type(field: FieldSpec) -> str:
    """Map a field to its SQLite column affinity."""
    ft = field.type
    if ft.kind == "scalar" and ft.scalar_type is not None:
        if ft.scalar_type.value in ("int", "bigint", "bool"):
            return "INTEGER"
        if ft.scalar_type.value == "decimal":
            return "REAL"
    return "TEXT"


# =============================================================================
# Transaction
# =============================================================================


class Transaction:
    """
    A transaction handle with commit/rollback semantics.

    Exclusively owned by a single in-flight call chain. Once marked
    rollback-only (a pipeline step failed), ``commit()`` rolls back instead
    and raises ``InternalError``.
    """

    def __init__(self, conn: sqlite3.Connection, *, close_on_finish: bool = True):
        self._conn = conn
        self._close_on_finish = close_on_finish
        self._on_commit: list[CommitCallback] = []
        self._rollback_only = False
        self._finished = False
        self._conn.execute("BEGIN IMMEDIATE")

    @property
    def active(self) -> bool:
        return not self._finished

    @property
    def rollback_only(self) -> bool:
        return self._rollback_only

    def mark_rollback_only(self) -> None:
        self._rollback_only = True

    def _check_active(self) -> None:
        if self._finished:
            raise InternalError("Transaction already finished")

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        """Execute a statement inside this transaction."""
        self._check_active()
        return self._conn.execute(sql, tuple(params))

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        return [dict(row) for row in self.execute(sql, params).fetchall()]

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        row = self.execute(sql, params).fetchone()
        return dict(row) if row is not None else None

    def on_commit(self, callback: CommitCallback) -> None:
        """Run ``callback`` once this transaction has committed. Discarded on rollback."""
        self._check_active()
        self._on_commit.append(callback)

    def commit(self) -> None:
        """Commit, then run on-commit callbacks in registration order."""
        self._check_active()
        if self._rollback_only:
            self.rollback()
            raise InternalError("Transaction was marked rollback-only and has been rolled back")
        try:
            self._conn.commit()
        except sqlite3.Error as exc:
            self.rollback()
            raise InternalError(f"Commit failed: {exc}") from exc
        callbacks, self._on_commit = self._on_commit, []
        self._finish()
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("On-commit callback failed")

    def rollback(self) -> None:
        if self._finished:
            return
        try:
            self._conn.rollback()
        finally:
            self._on_commit.clear()
            self._finish()

    def _finish(self) -> None:
        self._finished = True
        if self._close_on_finish:
            self._conn.close()


def current_transaction() -> Transaction | None:
    """The still-open transaction bound to the running task, if any."""
    tx = _current_transaction.get()
    return tx if tx is not None and tx.active else None


@contextmanager
def bind_transaction(tx: Transaction) -> Iterator[Transaction]:
    """
    Make ``tx`` the task's current transaction for the duration of the block.

    Domain calls made inside the block without a ``tx`` (typically from a
    hook) join it instead of waiting for the write lock the block holds.
    """
    token = _current_transaction.set(tx)
    try:
        yield tx
    finally:
        _current_transaction.reset(token)


# =============================================================================
# Database Manager
# =============================================================================


class DatabaseManager:
    """
    Manages the SQLite database file, schema creation and transactions.

    Every transaction opens its own connection so that concurrent requests
    never share a handle. WAL journaling lets readers see the last committed
    state while a writer holds its transaction open.
    """

    def __init__(self, db_path: str | Path = ".domain_engine/data.db"):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock: asyncio.Lock | None = None

    def connect(self) -> sqlite3.Connection:
        """Open a new connection with foreign keys enforced."""
        conn = sqlite3.connect(str(self.db_path), isolation_level=None, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    def begin(self) -> Transaction:
        """Start a transaction the caller must commit or roll back."""
        return Transaction(self.connect())

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """
        Transaction context manager.

        Commits when the block exits normally (running on-commit callbacks),
        rolls back when it raises. Transactions opened here are serialized
        on an asyncio lock so a waiting writer never blocks the event loop on
        the SQLite write lock.

        Called while the running task is already inside a transaction (a hook
        calling another domain without passing its ``tx``), the block joins
        that transaction: it neither commits nor rolls back, and a failure
        marks the shared transaction rollback-only.

        Yields:
            Transaction handle
        """
        outer = current_transaction()
        if outer is not None:
            try:
                yield outer
            except BaseException:
                outer.mark_rollback_only()
                raise
            return

        if self._write_lock is None:
            self._write_lock = asyncio.Lock()
        async with self._write_lock:
            tx = self.begin()
            with bind_transaction(tx):
                try:
                    yield tx
                except BaseException:
                    tx.rollback()
                    raise
            # unbound first, so after-hook tasks created on commit start outside it
            if tx.active:
                tx.commit()

    # -------------------------------------------------------------------------
    # Schema
    # -------------------------------------------------------------------------

    def create_all_tables(self, registry: EntityRegistry) -> None:
        """
        Create tables for all entities, then every junction table.

        Args:
            registry: Entity registry
        """
        conn = self.connect()
        try:
            conn.execute("BEGIN")
            for entity in registry.entities:
                for sql in self._entity_ddl(entity, registry):
                    conn.execute(sql)
            for junction in registry.junction_tables:
                for sql in self._junction_ddl(junction, registry):
                    conn.execute(sql)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        logger.info(
            "Schema ready: %d entities, %d junction tables",
            len(registry.entities),
            len(registry.junction_tables),
        )

    def _entity_ddl(self, entity: EntitySpec, registry: EntityRegistry) -> list[str]:
        columns: list[str] = []
        constraints: list[str] = []

        for field in entity.fields:
            parts = [quote_identifier(field.name), _field_to_sqlite_type(field)]
            if field.name == entity.primary_key:
                parts.append("PRIMARY KEY")
            elif field.required:
                parts.append("NOT NULL")
            if field.unique:
                parts.append("UNIQUE")
            columns.append(" ".join(parts))

            if field.type.kind == "ref" and field.type.ref_entity:
                target = registry.get_entity(field.type.ref_entity)
                on_delete = _on_delete_for(entity, field.name)
                constraints.append(
                    f"FOREIGN KEY ({quote_identifier(field.name)}) "
                    f"REFERENCES {quote_identifier(target.table)}"
                    f"({quote_identifier(target.primary_key)}) ON DELETE {on_delete}"
                )

        table = quote_identifier(entity.table)
        statements = [f"CREATE TABLE IF NOT EXISTS {table} ({', '.join(columns + constraints)})"]

        for field in entity.fields:
            if field.indexed or field.type.kind == "ref":
                idx = quote_identifier(f"idx_{entity.table}_{field.name}")
                statements.append(
                    f"CREATE INDEX IF NOT EXISTS {idx} ON {table}({quote_identifier(field.name)})"
                )
        return statements

    def _junction_ddl(self, junction: JunctionTable, registry: EntityRegistry) -> list[str]:
        (left_col, left_entity), (right_col, right_entity) = junction.columns
        left = registry.get_entity(left_entity)
        right = registry.get_entity(right_entity)
        lc, rc = quote_identifier(left_col), quote_identifier(right_col)
        table = quote_identifier(junction.table)
        return [
            f"CREATE TABLE IF NOT EXISTS {table} ("
            f"{lc} TEXT NOT NULL, {rc} TEXT NOT NULL, "
            f'"createdAt" TEXT NOT NULL, '
            f"PRIMARY KEY ({lc}, {rc}), "
            f"FOREIGN KEY ({lc}) REFERENCES {quote_identifier(left.table)}"
            f"({quote_identifier(left.primary_key)}), "
            f"FOREIGN KEY ({rc}) REFERENCES {quote_identifier(right.table)}"
            f"({quote_identifier(right.primary_key)}))",
            f"CREATE INDEX IF NOT EXISTS {quote_identifier(f'idx_{junction.table}_{right_col}')} "
            f"ON {table}({rc})",
        ]

    def table_exists(self, table_name: str) -> bool:
        """Check if a table exists."""
        conn = self.connect()
        try:
            row = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table_name,)
            ).fetchone()
            return row is not None
        finally:
            conn.close()


def _on_delete_for(entity: EntitySpec, fk_field: str) -> str:
    on_delete_map = {
        "restrict": "RESTRICT",
        "cascade": "CASCADE",
        "set_null": "SET NULL",
        "no_action": "NO ACTION",
    }
    for rel in entity.relations:
        if rel.foreign_key == fk_field and rel.kind.value in ("many_to_one", "one_to_one"):
            return on_delete_map[rel.on_delete.value]
    return "RESTRICT"
