"""
Entity specification type definitions.

This module exports all entity, relation and registry types.
"""

from domain_engine.specs.entity import (
    EndpointConfig,
    EntitySpec,
    FieldSpec,
    FieldType,
    JunctionSpec,
    OnDeleteAction,
    RelationEndpointConfig,
    RelationKind,
    RelationSpec,
    ScalarType,
    SpatialType,
    TimestampSpec,
)
from domain_engine.specs.registry import (
    EntityRegistry,
    JunctionTable,
    RegistryError,
    ResolvedRelation,
)

__all__ = [
    # Entity
    "EndpointConfig",
    "EntitySpec",
    "FieldSpec",
    "FieldType",
    "JunctionSpec",
    "OnDeleteAction",
    "RelationEndpointConfig",
    "RelationKind",
    "RelationSpec",
    "ScalarType",
    "SpatialType",
    "TimestampSpec",
    # Registry
    "EntityRegistry",
    "JunctionTable",
    "RegistryError",
    "ResolvedRelation",
]
