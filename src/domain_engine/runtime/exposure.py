"""
Field exposure filtering for outbound payloads.

Every value that leaves the domain layer goes through
``FieldExposureFilter.project``; fields declared ``exposed=False`` never
appear in a response, including inside included relations.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from domain_engine.specs.registry import EntityRegistry


class FieldExposureFilter:
    """Removes non-exposed fields from rows, lists of rows and included relations."""

    def __init__(self, registry: EntityRegistry):
        self.registry = registry
        self._exposed = {e.name: e.exposed_field_names for e in registry.entities}
        self._relations = {
            e.name: {r.name: r.target.name for r in registry.get_relations(e.name)}
            for e in registry.entities
        }

    def project(self, entity_name: str, value: Any) -> Any:
        """
        Project a row, a list of rows or ``None``, preserving the shape.

        Keys that are neither exposed fields nor relation names are dropped.
        """
        if value is None:
            return None
        if isinstance(value, list | tuple):
            return [self._project_row(entity_name, row) for row in value]
        return self._project_row(entity_name, value)

    def _project_row(self, entity_name: str, row: dict[str, Any]) -> dict[str, Any]:
        exposed = self._exposed[entity_name]
        relations = self._relations[entity_name]
        projected: dict[str, Any] = {}
        for key, item in row.items():
            if key in exposed:
                projected[key] = item
            elif key in relations:
                projected[key] = self.project(relations[key], item)
        return projected

    def hidden_fields(self, entity_name: str) -> list[str]:
        entity = self.registry.get_entity(entity_name)
        return [f.name for f in entity.fields if not f.exposed]
