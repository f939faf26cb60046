"""
Relation loader for ``include`` expansion.

Attaches related entities under their relation name. Every relation is
loaded with one batched query per relation (two for many-to-many: edges,
then the far side), never one query per row.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

from domain_engine.runtime.errors import ValidationError
from domain_engine.runtime.repository import normalize_id
from domain_engine.specs.entity import RelationKind

if TYPE_CHECKING:
    from domain_engine.runtime.database import Transaction
    from domain_engine.runtime.junction import JunctionManager
    from domain_engine.runtime.repository import Repository
    from domain_engine.specs.entity import EntitySpec
    from domain_engine.specs.registry import EntityRegistry, ResolvedRelation

logger = logging.getLogger(__name__)


def parse_include(include: str | Iterable[str] | None) -> list[str]:
    """Normalize ``"a,b"`` or ``["a", "b"]`` into a de-duplicated list of names."""
    if include is None:
        return []
    items = include.split(",") if isinstance(include, str) else list(include)
    return list(dict.fromkeys(name.strip() for name in items if name and name.strip()))


class RelationLoader:
    """
    Loads related entities for a batch of rows.

    Read-only: never mutates storage.
    """

    def __init__(
        self,
        registry: EntityRegistry,
        repositories: Mapping[str, Repository],
        junctions: JunctionManager,
    ):
        """
        Initialize the relation loader.

        Args:
            registry: Entity registry
            repositories: Repository per entity name
            junctions: Junction manager used for many-to-many edges
        """
        self.registry = registry
        self.repositories = repositories
        self.junctions = junctions

    def resolve(self, entity_name: str, include: str | Iterable[str] | None) -> list[ResolvedRelation]:
        """
        Validate include names against the entity's relations.

        Raises:
            ValidationError: If a name is not a relation of the entity
        """
        resolved: list[ResolvedRelation] = []
        for name in parse_include(include):
            relation = self.registry.get_relation(entity_name, name)
            if relation is None:
                raise ValidationError(f"Unknown relation '{name}' on {entity_name}")
            resolved.append(relation)
        return resolved

    def load_relations(
        self,
        tx: Transaction,
        entity: EntitySpec,
        rows: list[dict[str, Any]],
        include: str | Iterable[str] | None,
    ) -> list[dict[str, Any]]:
        """
        Load relations for a list of entity rows.

        Args:
            tx: Active transaction
            entity: Entity the rows belong to
            rows: Entity rows
            include: Relation names to include

        Returns:
            The rows, each with one key per included relation
        """
        relations = self.resolve(entity.name, include)
        if not relations or not rows:
            return rows

        for relation in relations:
            if relation.spec.is_many_to_many:
                self._load_many_to_many(tx, entity, relation, rows)
            elif relation.kind == RelationKind.ONE_TO_MANY:
                self._load_to_many(tx, entity, relation, rows)
            elif relation.kind == RelationKind.ONE_TO_ONE and not entity.get_field(
                relation.spec.foreign_key or ""
            ):
                self._load_inverse_one(tx, entity, relation, rows)
            else:
                self._load_to_one(tx, relation, rows)
        return rows

    def _load_to_one(
        self, tx: Transaction, relation: ResolvedRelation, rows: list[dict[str, Any]]
    ) -> None:
        """Many-to-one or owned one-to-one: the foreign key lives on the row."""
        fk_field = relation.spec.foreign_key
        assert fk_field is not None
        target_repo = self.repositories[relation.target.name]
        related = target_repo.fetch_by_ids(tx, (row.get(fk_field) for row in rows))
        for row in rows:
            fk_value = row.get(fk_field)
            row[relation.name] = related.get(normalize_id(fk_value)) if fk_value else None

    def _load_inverse_one(
        self,
        tx: Transaction,
        entity: EntitySpec,
        relation: ResolvedRelation,
        rows: list[dict[str, Any]],
    ) -> None:
        """One-to-one where the foreign key lives on the target."""
        fk_field = relation.spec.foreign_key
        assert fk_field is not None
        pk = entity.primary_key
        target_rows = self.repositories[relation.target.name].fetch_where_in(
            tx, fk_field, (row[pk] for row in rows)
        )
        by_owner: dict[Any, dict[str, Any]] = {}
        for target in target_rows:
            by_owner.setdefault(normalize_id(target[fk_field]), target)
        for row in rows:
            row[relation.name] = by_owner.get(normalize_id(row[pk]))

    def _load_to_many(
        self,
        tx: Transaction,
        entity: EntitySpec,
        relation: ResolvedRelation,
        rows: list[dict[str, Any]],
    ) -> None:
        """One-to-many: the foreign key on the target points back at the row."""
        fk_field = relation.spec.foreign_key
        assert fk_field is not None
        pk = entity.primary_key
        target_rows = self.repositories[relation.target.name].fetch_where_in(
            tx, fk_field, (row[pk] for row in rows)
        )
        grouped: dict[Any, list[dict[str, Any]]] = {}
        for target in target_rows:
            grouped.setdefault(normalize_id(target[fk_field]), []).append(target)
        for row in rows:
            row[relation.name] = grouped.get(normalize_id(row[pk]), [])

    def _load_many_to_many(
        self,
        tx: Transaction,
        entity: EntitySpec,
        relation: ResolvedRelation,
        rows: list[dict[str, Any]],
    ) -> None:
        """Many-to-many through the junction, in edge insertion order."""
        pk = entity.primary_key
        edges = self.junctions.related_ids(tx, relation, (row[pk] for row in rows))
        all_related = {rid for ids in edges.values() for rid in ids}
        related = self.repositories[relation.target.name].fetch_by_ids(tx, all_related)
        for row in rows:
            ids = edges.get(normalize_id(row[pk]), [])
            # soft-deleted targets are absent from ``related``
            row[relation.name] = [related[rid] for rid in ids if rid in related]

    def load_one(
        self,
        tx: Transaction,
        entity: EntitySpec,
        row: dict[str, Any],
        include: str | Iterable[str] | None,
    ) -> dict[str, Any]:
        return self.load_relations(tx, entity, [row], include)[0]
