"""
Junction table manager for many-to-many relations.

An edge is identified by its two keys: the ordered pair for directional
relations, the unordered pair (stored canonically, smaller id first) for
symmetric ones. Inserting an existing edge is a no-op; removing a missing
edge is a no-op. Self-referential directions share one table with the key
roles swapped.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from domain_engine.runtime.errors import ValidationError, translate_storage_error
from domain_engine.runtime.query_builder import format_datetime, quote_identifier
from domain_engine.runtime.repository import normalize_id

if TYPE_CHECKING:
    from domain_engine.runtime.database import Transaction
    from domain_engine.specs.entity import JunctionSpec
    from domain_engine.specs.registry import EntityRegistry, ResolvedRelation

logger = logging.getLogger(__name__)

JUNCTION_CREATED_COLUMN = "createdAt"


def _junction_of(relation: ResolvedRelation) -> JunctionSpec:
    if relation.spec.junction is None:
        raise ValidationError(f"Relation '{relation.name}' of {relation.owner} is not many-to-many")
    return relation.spec.junction


def _unique_ids(ids: Iterable[Any]) -> list[Any]:
    return list(dict.fromkeys(normalize_id(i) for i in ids if i is not None))


class JunctionManager:
    """
    Adds, removes and looks up junction edges inside the caller's transaction.

    Hooks are not run here; ``EntityDomain`` wraps the mutating calls in the
    hook pipeline.
    """

    def __init__(self, registry: EntityRegistry):
        self.registry = registry

    def _fail(self, exc: sqlite3.Error, relation: ResolvedRelation) -> Exception:
        return translate_storage_error(exc, relation.target)

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def add(
        self,
        tx: Transaction,
        relation: ResolvedRelation,
        owner_id: Any,
        related_ids: Iterable[Any],
    ) -> int:
        """
        Insert edges from ``owner_id`` to each related id, skipping existing ones.

        Returns:
            Number of new edges
        """
        junction = _junction_of(relation)
        owner = normalize_id(owner_id)
        table = quote_identifier(junction.table)
        src, tgt = quote_identifier(junction.source_key), quote_identifier(junction.target_key)
        created = quote_identifier(JUNCTION_CREATED_COLUMN)
        sql = (
            f"INSERT INTO {table} ({src}, {tgt}, {created}) VALUES (?, ?, ?) "
            f"ON CONFLICT DO NOTHING"
        )
        now = format_datetime(datetime.now(UTC))

        inserted = 0
        for related in _unique_ids(related_ids):
            pair = (owner, related)
            if junction.symmetric:
                pair = (min(owner, related), max(owner, related))
            try:
                cursor = tx.execute(sql, [pair[0], pair[1], now])
            except sqlite3.Error as exc:
                raise self._fail(exc, relation) from exc
            inserted += cursor.rowcount
        logger.debug(
            "Added %d edge(s) to %s.%s for %s", inserted, relation.owner, relation.name, owner
        )
        return inserted

    def remove(
        self,
        tx: Transaction,
        relation: ResolvedRelation,
        owner_id: Any,
        related_ids: Iterable[Any],
    ) -> int:
        """
        Delete edges from ``owner_id`` to each related id. Missing edges are ignored.

        Returns:
            Number of removed edges
        """
        junction = _junction_of(relation)
        owner = normalize_id(owner_id)
        related = _unique_ids(related_ids)
        if not related:
            return 0
        table = quote_identifier(junction.table)
        src, tgt = quote_identifier(junction.source_key), quote_identifier(junction.target_key)

        removed = 0
        try:
            if junction.symmetric:
                for other in related:
                    cursor = tx.execute(
                        f"DELETE FROM {table} WHERE {src} = ? AND {tgt} = ?",
                        [min(owner, other), max(owner, other)],
                    )
                    removed += cursor.rowcount
            else:
                placeholders = ", ".join("?" for _ in related)
                cursor = tx.execute(
                    f"DELETE FROM {table} WHERE {src} = ? AND {tgt} IN ({placeholders})",
                    [owner, *related],
                )
                removed = cursor.rowcount
        except sqlite3.Error as exc:
            raise self._fail(exc, relation) from exc
        return removed

    def clear(self, tx: Transaction, relation: ResolvedRelation, owner_id: Any) -> int:
        """Delete every edge of ``owner_id`` for this relation direction."""
        junction = _junction_of(relation)
        owner = normalize_id(owner_id)
        table = quote_identifier(junction.table)
        src, tgt = quote_identifier(junction.source_key), quote_identifier(junction.target_key)
        if junction.symmetric:
            sql, params = f"DELETE FROM {table} WHERE {src} = ? OR {tgt} = ?", [owner, owner]
        else:
            sql, params = f"DELETE FROM {table} WHERE {src} = ?", [owner]
        try:
            return tx.execute(sql, params).rowcount
        except sqlite3.Error as exc:
            raise self._fail(exc, relation) from exc

    def replace(
        self,
        tx: Transaction,
        relation: ResolvedRelation,
        owner_id: Any,
        related_ids: Iterable[Any],
    ) -> int:
        """
        Make ``related_ids`` the complete set of edges of ``owner_id``.

        Returns:
            Number of edges after the replacement
        """
        self.clear(tx, relation, owner_id)
        return self.add(tx, relation, owner_id, related_ids)

    def purge(self, tx: Transaction, entity_name: str, entity_id: Any) -> int:
        """
        Remove every edge referencing ``entity_id`` in any junction column.

        Self-referential tables are cleaned in both directions.

        Returns:
            Number of removed edges
        """
        key = normalize_id(entity_id)
        removed = 0
        for junction in self.registry.junctions_referencing(entity_name):
            table = quote_identifier(junction.table)
            columns = junction.columns_for(entity_name)
            condition = " OR ".join(f"{quote_identifier(c)} = ?" for c in columns)
            cursor = tx.execute(f"DELETE FROM {table} WHERE {condition}", [key] * len(columns))
            removed += cursor.rowcount
        if removed:
            logger.debug("Purged %d junction edge(s) of %s %s", removed, entity_name, key)
        return removed

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def has(self, tx: Transaction, relation: ResolvedRelation, owner_id: Any, related_id: Any) -> bool:
        """Check whether a single edge exists."""
        junction = _junction_of(relation)
        owner, related = normalize_id(owner_id), normalize_id(related_id)
        if junction.symmetric:
            owner, related = min(owner, related), max(owner, related)
        table = quote_identifier(junction.table)
        src, tgt = quote_identifier(junction.source_key), quote_identifier(junction.target_key)
        row = tx.fetchone(
            f"SELECT 1 FROM {table} WHERE {src} = ? AND {tgt} = ? LIMIT 1", [owner, related]
        )
        return row is not None

    def related_ids(
        self, tx: Transaction, relation: ResolvedRelation, owner_ids: Iterable[Any]
    ) -> dict[Any, list[Any]]:
        """
        Batch edge lookup.

        Returns:
            Map of normalized owner id to related ids, in edge insertion order
        """
        junction = _junction_of(relation)
        owners = _unique_ids(owner_ids)
        result: dict[Any, list[Any]] = {o: [] for o in owners}
        if not owners:
            return result

        table = quote_identifier(junction.table)
        src, tgt = quote_identifier(junction.source_key), quote_identifier(junction.target_key)
        placeholders = ", ".join("?" for _ in owners)

        rows = tx.fetchall(
            f"SELECT rowid AS seq, {src} AS owner, {tgt} AS related FROM {table} "
            f"WHERE {src} IN ({placeholders}) ORDER BY rowid",
            owners,
        )
        if junction.symmetric:
            rows += tx.fetchall(
                f"SELECT rowid AS seq, {tgt} AS owner, {src} AS related FROM {table} "
                f"WHERE {tgt} IN ({placeholders}) AND {src} != {tgt} ORDER BY rowid",
                owners,
            )
            rows.sort(key=lambda r: r["seq"])
        for row in rows:
            result[row["owner"]].append(row["related"])
        return result
