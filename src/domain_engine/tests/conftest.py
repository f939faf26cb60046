"""
Shared fixtures: a small HR model over a temporary SQLite database.

- Department 1--* Employee (departmentId)
- Employee *--* Project through employee_projects
- Employee mentors / mentees: two directions over one mentorship junction
- Employee friends: symmetric self-referential junction
- Employee.ssn and Department.budgetCode are not exposed
- Project is soft-deleted
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from domain_engine.runtime.config import EngineConfig
from domain_engine.runtime.engine import DomainEngine
from domain_engine.runtime.hooks import HookSet
from domain_engine.specs.entity import (
    EntitySpec,
    FieldSpec,
    FieldType,
    JunctionSpec,
    RelationKind,
    RelationSpec,
    ScalarType,
    SpatialType,
)
from domain_engine.specs.registry import EntityRegistry

STR = FieldType(kind="scalar", scalar_type=ScalarType.STR, max_length=200)


def make_department() -> EntitySpec:
    return EntitySpec(
        name="Department",
        fields=[
            FieldSpec(name="name", type=STR, required=True, unique=True),
            FieldSpec(name="budgetCode", type=STR, exposed=False),
        ],
        relations=[
            RelationSpec(
                name="employees",
                to_entity="Employee",
                kind=RelationKind.ONE_TO_MANY,
                foreign_key="departmentId",
            ),
        ],
    )


def make_employee() -> EntitySpec:
    return EntitySpec(
        name="Employee",
        fields=[
            FieldSpec(name="firstName", label="First name", type=STR, required=True),
            FieldSpec(name="lastName", type=STR),
            FieldSpec(
                name="email",
                type=FieldType(kind="scalar", scalar_type=ScalarType.EMAIL),
                unique=True,
            ),
            FieldSpec(name="ssn", type=STR, exposed=False),
            FieldSpec(name="age", type=FieldType(kind="scalar", scalar_type=ScalarType.INT)),
            FieldSpec(
                name="location",
                type=FieldType(kind="spatial", spatial_type=SpatialType.POINT, srid=4326),
            ),
            FieldSpec(name="departmentId", type=FieldType(kind="ref", ref_entity="Department")),
        ],
        relations=[
            RelationSpec(
                name="department",
                to_entity="Department",
                kind=RelationKind.MANY_TO_ONE,
                foreign_key="departmentId",
            ),
            RelationSpec(
                name="projects",
                to_entity="Project",
                kind=RelationKind.MANY_TO_MANY,
                junction=JunctionSpec(
                    table="employee_projects", source_key="employeeId", target_key="projectId"
                ),
            ),
            RelationSpec(
                name="mentors",
                to_entity="Employee",
                kind=RelationKind.SELF_MANY_TO_MANY,
                junction=JunctionSpec(
                    table="mentorship", source_key="menteeId", target_key="mentorId"
                ),
            ),
            RelationSpec(
                name="mentees",
                to_entity="Employee",
                kind=RelationKind.SELF_MANY_TO_MANY,
                junction=JunctionSpec(
                    table="mentorship", source_key="mentorId", target_key="menteeId"
                ),
            ),
            RelationSpec(
                name="friends",
                to_entity="Employee",
                kind=RelationKind.SELF_MANY_TO_MANY,
                junction=JunctionSpec(
                    table="friendship",
                    source_key="employeeA",
                    target_key="employeeB",
                    symmetric=True,
                ),
            ),
        ],
    )


def make_project() -> EntitySpec:
    return EntitySpec(
        name="Project",
        soft_delete=True,
        fields=[
            FieldSpec(name="name", type=STR, required=True),
            FieldSpec(
                name="status",
                type=FieldType(kind="enum", enum_values=["active", "archived"]),
                default="active",
            ),
            FieldSpec(name="meta", type=FieldType(kind="scalar", scalar_type=ScalarType.JSON)),
        ],
        relations=[
            RelationSpec(
                name="members",
                to_entity="Employee",
                kind=RelationKind.MANY_TO_MANY,
                junction=JunctionSpec(
                    table="employee_projects", source_key="projectId", target_key="employeeId"
                ),
            ),
        ],
    )


def make_entities() -> list[EntitySpec]:
    return [make_department(), make_employee(), make_project()]


def alternating_filter(levels: int) -> dict[str, Any]:
    """``levels`` nested groups alternating and/or, each with a leaf and the next group."""
    node: dict[str, Any] = {"field": "age", "op": "gt", "value": 0}
    for level in range(levels):
        key = "and" if level % 2 == 0 else "or"
        node = {key: [{"field": "age", "op": "lt", "value": 200 + level}, node]}
    return node


@pytest.fixture
def registry() -> EntityRegistry:
    return EntityRegistry.from_entities(make_entities())


@pytest.fixture
def config(tmp_path: Path) -> EngineConfig:
    return EngineConfig(db_path=tmp_path / "engine.db")


@pytest.fixture
def make_engine(
    registry: EntityRegistry, config: EngineConfig
) -> Callable[..., DomainEngine]:
    """Factory building an initialized engine with the given hooks."""

    def _make(hooks: HookSet | None = None, **overrides: Any) -> DomainEngine:
        cfg = config.model_copy(update=overrides) if overrides else config
        engine = DomainEngine(registry, hooks=hooks, config=cfg)
        engine.initialize()
        return engine

    return _make


@pytest.fixture
def engine(make_engine: Callable[..., DomainEngine]) -> DomainEngine:
    return make_engine()


@pytest.fixture
def committed_count(config: EngineConfig) -> Callable[[str], int]:
    """Row count as seen by an independent connection (committed data only)."""

    def _count(table: str) -> int:
        conn = sqlite3.connect(str(config.db_path))
        try:
            return conn.execute(f'SELECT COUNT(*) FROM "{table}"').fetchone()[0]
        finally:
            conn.close()

    return _count
