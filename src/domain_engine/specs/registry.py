"""
Entity registry.

Static, read-only catalogue of entities, their relations and the junction
tables behind many-to-many relations. Built once at startup from a list of
``EntitySpec`` and shared by every request.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING

from domain_engine.specs.entity import EntitySpec, RelationKind, RelationSpec

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping


class RegistryError(ValueError):
    """Raised when entity declarations are inconsistent."""


@dataclass(frozen=True)
class JunctionTable:
    """A junction table and the entity each of its key columns references."""

    table: str
    columns: tuple[tuple[str, str], tuple[str, str]]  # ((column, entity), (column, entity))
    symmetric: bool = False

    @property
    def is_self_referential(self) -> bool:
        return self.columns[0][1] == self.columns[1][1]

    def columns_for(self, entity_name: str) -> list[str]:
        """Key columns that reference ``entity_name``."""
        return [col for col, ent in self.columns if ent == entity_name]


@dataclass(frozen=True)
class ResolvedRelation:
    """A relation together with the entities on both ends."""

    owner: str
    spec: RelationSpec
    target: EntitySpec

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def kind(self) -> RelationKind:
        return self.spec.kind

    @property
    def is_to_one(self) -> bool:
        return self.spec.kind in (RelationKind.MANY_TO_ONE, RelationKind.ONE_TO_ONE)

    @property
    def is_to_many(self) -> bool:
        return not self.is_to_one


@dataclass
class EntityRegistry:
    """
    Registry of entity specifications.

    Validates cross-entity references on construction:
    - every relation target exists
    - foreign keys name real fields on the side that owns them
    - junction tables shared by several relations agree on their columns
    """

    _entities: Mapping[str, EntitySpec] = field(default_factory=dict)
    _relations: Mapping[tuple[str, str], ResolvedRelation] = field(default_factory=dict)
    _junctions: Mapping[str, JunctionTable] = field(default_factory=dict)

    @classmethod
    def from_entities(cls, entities: Iterable[EntitySpec]) -> EntityRegistry:
        """
        Build a registry from entity specifications.

        Args:
            entities: Entity specs

        Returns:
            Read-only registry

        Raises:
            RegistryError: If declarations are inconsistent
        """
        entity_map: dict[str, EntitySpec] = {}
        for entity in entities:
            if entity.name in entity_map:
                raise RegistryError(f"Entity '{entity.name}' declared twice")
            entity_map[entity.name] = entity

        tables = [e.table for e in entity_map.values()]
        if len(set(tables)) != len(tables):
            raise RegistryError("Two entities share a storage table")

        relations: dict[tuple[str, str], ResolvedRelation] = {}
        junctions: dict[str, JunctionTable] = {}

        for entity in entity_map.values():
            for f in entity.fields:
                if f.type.kind == "ref" and f.type.ref_entity not in entity_map:
                    raise RegistryError(
                        f"{entity.name}.{f.name} references unknown entity '{f.type.ref_entity}'"
                    )

            for rel in entity.relations:
                target = entity_map.get(rel.to_entity)
                if target is None:
                    raise RegistryError(
                        f"Relation {entity.name}.{rel.name} targets unknown entity '{rel.to_entity}'"
                    )
                _check_foreign_key(entity, rel, target)
                if rel.junction is not None:
                    if rel.kind == RelationKind.SELF_MANY_TO_MANY and target.name != entity.name:
                        raise RegistryError(
                            f"Relation {entity.name}.{rel.name} is self-referential "
                            f"but targets '{target.name}'"
                        )
                    if rel.junction.table in {e.table for e in entity_map.values()}:
                        raise RegistryError(
                            f"Junction table '{rel.junction.table}' collides with an entity table"
                        )
                    _merge_junction(junctions, entity.name, rel)
                relations[(entity.name, rel.name)] = ResolvedRelation(
                    owner=entity.name, spec=rel, target=target
                )

        return cls(
            _entities=MappingProxyType(entity_map),
            _relations=MappingProxyType(relations),
            _junctions=MappingProxyType(junctions),
        )

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    @property
    def entities(self) -> list[EntitySpec]:
        return list(self._entities.values())

    @property
    def junction_tables(self) -> list[JunctionTable]:
        return list(self._junctions.values())

    def has_entity(self, name: str) -> bool:
        return name in self._entities

    def get_entity(self, name: str) -> EntitySpec:
        """Get an entity by name, raising ``KeyError`` when unknown."""
        try:
            return self._entities[name]
        except KeyError:
            raise KeyError(f"Unknown entity: {name}") from None

    def get_relation(self, entity_name: str, relation_name: str) -> ResolvedRelation | None:
        return self._relations.get((entity_name, relation_name))

    def get_relations(self, entity_name: str) -> list[ResolvedRelation]:
        return [r for (owner, _), r in self._relations.items() if owner == entity_name]

    def get_junction(self, table: str) -> JunctionTable:
        return self._junctions[table]

    def junctions_referencing(self, entity_name: str) -> list[JunctionTable]:
        """Junction tables with at least one column pointing at ``entity_name``."""
        return [j for j in self._junctions.values() if j.columns_for(entity_name)]


def _check_foreign_key(entity: EntitySpec, rel: RelationSpec, target: EntitySpec) -> None:
    if rel.is_many_to_many:
        return
    if not rel.foreign_key:
        raise RegistryError(f"Relation {entity.name}.{rel.name} needs a foreign_key")

    if rel.kind == RelationKind.MANY_TO_ONE:
        holders = [entity]
    elif rel.kind == RelationKind.ONE_TO_MANY:
        holders = [target]
    else:
        # one_to_one may be owned (FK here) or inverse (FK on the target)
        holders = [entity, target]

    if not any(h.get_field(rel.foreign_key) for h in holders):
        where = " or ".join(h.name for h in holders)
        raise RegistryError(
            f"Relation {entity.name}.{rel.name}: foreign key '{rel.foreign_key}' "
            f"is not a field of {where}"
        )


def _merge_junction(
    junctions: dict[str, JunctionTable], owner: str, rel: RelationSpec
) -> None:
    assert rel.junction is not None
    spec = rel.junction
    declared = JunctionTable(
        table=spec.table,
        columns=((spec.source_key, owner), (spec.target_key, rel.to_entity)),
        symmetric=spec.symmetric,
    )
    existing = junctions.get(spec.table)
    if existing is None:
        junctions[spec.table] = declared
        return
    if sorted(existing.columns) != sorted(declared.columns) or existing.symmetric != spec.symmetric:
        raise RegistryError(
            f"Relation {owner}.{rel.name} disagrees with an earlier declaration "
            f"of junction '{spec.table}'"
        )
