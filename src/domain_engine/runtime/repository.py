"""
SQLite repository - persistence layer for the domain engine.

One stateless ``Repository`` per entity. Every method takes the active
``Transaction``; the repository never opens or commits one itself. Storage
errors are translated into the domain error taxonomy at this boundary.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from domain_engine.runtime.errors import translate_storage_error
from domain_engine.runtime.query_builder import QueryBuilder, quote_identifier, to_sqlite_value
from domain_engine.specs.entity import EntitySpec, FieldType, ScalarType

if TYPE_CHECKING:
    from domain_engine.runtime.database import Transaction
    from domain_engine.runtime.filter_compiler import Predicate

logger = logging.getLogger(__name__)


# =============================================================================
# Value Conversion
# =============================================================================


def normalize_id(value: Any) -> Any:
    """Canonical stored form of an identifier (lowercase UUID text when it parses)."""
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, str):
        try:
            return str(UUID(value))
        except ValueError:
            return value
    return value


def _decode_identifier(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return UUID(value)
        except ValueError:
            return value
    return value


def sqlite_to_python(value: Any, field_type: FieldType | None = None) -> Any:
    """Convert SQLite value to Python type based on field type."""
    if value is None:
        return None
    if field_type is None:
        return value

    if field_type.kind == "scalar" and field_type.scalar_type:
        scalar = field_type.scalar_type
        if scalar == ScalarType.UUID:
            return _decode_identifier(value)
        elif scalar == ScalarType.DATETIME:
            return datetime.fromisoformat(value)
        elif scalar == ScalarType.DATE:
            return date.fromisoformat(value)
        elif scalar == ScalarType.DECIMAL:
            return Decimal(str(value))
        elif scalar == ScalarType.BOOL:
            return bool(value)
        elif scalar == ScalarType.JSON:
            return json.loads(value) if isinstance(value, str) else value
        else:
            return value
    elif field_type.kind == "ref":
        return _decode_identifier(value)
    else:
        return value


# =============================================================================
# Repository
# =============================================================================


class Repository:
    """
    SQLite repository for a single entity type.

    Rows go in and come out as plain dicts keyed by field name, with values
    converted between Python and SQLite per field type.
    """

    def __init__(self, entity: EntitySpec):
        self.entity = entity
        self.table = entity.table
        self.pk = entity.primary_key
        self._fields = {f.name: f for f in entity.fields}
        self._table_sql = quote_identifier(self.table)
        self._pk_sql = quote_identifier(self.pk)

    @contextmanager
    def _translate_errors(self) -> Iterator[None]:
        try:
            yield
        except sqlite3.Error as exc:
            raise translate_storage_error(exc, self.entity) from exc

    def _to_db(self, name: str, value: Any) -> Any:
        field = self._fields.get(name)
        if field is not None and field.type.kind == "ref":
            return normalize_id(value)
        if name == self.pk:
            return normalize_id(value)
        return to_sqlite_value(value, field)

    def _from_db(self, row: dict[str, Any]) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for name, value in row.items():
            field = self._fields.get(name)
            result[name] = sqlite_to_python(value, field.type if field else None)
        return result

    def _live_clause(self) -> str:
        deleted = self.entity.deleted_field
        return f" AND {quote_identifier(deleted)} IS NULL" if deleted else ""

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def insert(self, tx: Transaction, values: dict[str, Any]) -> dict[str, Any]:
        """
        Insert a row.

        Args:
            tx: Active transaction
            values: Complete row (primary key and audit fields included)

        Returns:
            The stored row
        """
        db_data = {k: self._to_db(k, v) for k, v in values.items() if k in self._fields}
        columns = ", ".join(quote_identifier(k) for k in db_data)
        placeholders = ", ".join("?" for _ in db_data)
        sql = f"INSERT INTO {self._table_sql} ({columns}) VALUES ({placeholders})"
        with self._translate_errors():
            tx.execute(sql, list(db_data.values()))
        row = self.fetch_by_id(tx, values[self.pk])
        assert row is not None
        return row

    def update(self, tx: Transaction, id: Any, values: dict[str, Any]) -> bool:
        """
        Update columns of a live row.

        Returns:
            True if a row was updated, False if not found
        """
        db_data = {k: self._to_db(k, v) for k, v in values.items() if k in self._fields}
        if not db_data:
            return self.exists(tx, id)
        set_clause = ", ".join(f"{quote_identifier(k)} = ?" for k in db_data)
        sql = (
            f"UPDATE {self._table_sql} SET {set_clause} "
            f"WHERE {self._pk_sql} = ?{self._live_clause()}"
        )
        with self._translate_errors():
            cursor = tx.execute(sql, [*db_data.values(), normalize_id(id)])
        return cursor.rowcount > 0

    def delete(self, tx: Transaction, id: Any, deleted_at: datetime | None = None) -> bool:
        """
        Delete a row: soft (mark ``deletedAt``) for soft-delete entities, hard otherwise.

        Returns:
            True if deleted, False if not found
        """
        deleted = self.entity.deleted_field
        if deleted:
            sql = (
                f"UPDATE {self._table_sql} SET {quote_identifier(deleted)} = ? "
                f"WHERE {self._pk_sql} = ?{self._live_clause()}"
            )
            params = [to_sqlite_value(deleted_at or datetime.now().astimezone()), normalize_id(id)]
        else:
            sql = f"DELETE FROM {self._table_sql} WHERE {self._pk_sql} = ?"
            params = [normalize_id(id)]
        with self._translate_errors():
            cursor = tx.execute(sql, params)
        return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def fetch_by_id(self, tx: Transaction, id: Any) -> dict[str, Any] | None:
        sql = f"SELECT * FROM {self._table_sql} WHERE {self._pk_sql} = ?{self._live_clause()}"
        with self._translate_errors():
            row = tx.fetchone(sql, [normalize_id(id)])
        return self._from_db(row) if row else None

    def exists(self, tx: Transaction, id: Any) -> bool:
        sql = f"SELECT 1 FROM {self._table_sql} WHERE {self._pk_sql} = ?{self._live_clause()} LIMIT 1"
        with self._translate_errors():
            return tx.fetchone(sql, [normalize_id(id)]) is not None

    def fetch_where_in(
        self, tx: Transaction, column: str, values: Iterable[Any]
    ) -> list[dict[str, Any]]:
        """
        Batch fetch live rows whose ``column`` is one of ``values``, in insertion order.
        """
        keys = list(dict.fromkeys(normalize_id(v) for v in values if v is not None))
        if not keys:
            return []
        placeholders = ", ".join("?" for _ in keys)
        sql = (
            f"SELECT * FROM {self._table_sql} "
            f"WHERE {quote_identifier(column)} IN ({placeholders}){self._live_clause()} "
            f"ORDER BY rowid"
        )
        with self._translate_errors():
            rows = tx.fetchall(sql, keys)
        return [self._from_db(r) for r in rows]

    def fetch_by_ids(self, tx: Transaction, ids: Iterable[Any]) -> dict[Any, dict[str, Any]]:
        """Batch fetch by primary key; result keyed by the normalized id."""
        return {normalize_id(r[self.pk]): r for r in self.fetch_where_in(tx, self.pk, ids)}

    def _builder(self, predicate: Predicate | None) -> QueryBuilder:
        builder = QueryBuilder(table=self.table, predicate=predicate)
        builder.exclude_soft_deleted(self.entity.deleted_field)
        return builder

    def select(
        self,
        tx: Transaction,
        predicate: Predicate | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Select live rows matching a compiled predicate."""
        builder = self._builder(predicate)
        builder.order_by = order_by
        builder.descending = descending
        builder.limit = limit
        builder.offset = offset
        sql, params = builder.build_select()
        logger.debug("select %s: %s %s", self.entity.name, sql, params)
        with self._translate_errors():
            rows = tx.fetchall(sql, params)
        return [self._from_db(r) for r in rows]

    def count(self, tx: Transaction, predicate: Predicate | None = None) -> int:
        """Count live rows matching a compiled predicate, ignoring pagination."""
        sql, params = self._builder(predicate).build_count()
        with self._translate_errors():
            row = tx.fetchone(sql, params)
        return int(row["total"]) if row else 0
