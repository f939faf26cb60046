"""
Model generator - builds pydantic input models from EntitySpec.

Create models hold every caller-writable field; update models hold the same
fields, all optional, for partial updates. The primary key and the audit and
soft-delete columns are maintained by the engine and excluded from both.
Unknown keys are rejected.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, create_model

from domain_engine.runtime.filter_compiler import python_type_for
from domain_engine.specs.entity import EntitySpec, FieldSpec, ScalarType

# =============================================================================
# Type Mapping
# =============================================================================


def _field_python_type(field: FieldSpec) -> Any:
    """Python type of a field for input validation."""
    ft = field.type
    if ft.kind == "enum" and ft.enum_values:
        return Literal[tuple(ft.enum_values)]
    if ft.kind == "scalar" and ft.scalar_type == ScalarType.JSON:
        return dict[str, Any] | list[Any]
    return python_type_for(field)


def _constraints(field: FieldSpec) -> dict[str, Any]:
    kwargs: dict[str, Any] = {}
    if field.label:
        kwargs["description"] = field.label
    if field.type.max_length:
        kwargs["max_length"] = field.type.max_length
    if field.type.kind == "scalar" and field.type.scalar_type == ScalarType.DECIMAL:
        if field.type.precision:
            kwargs["max_digits"] = field.type.precision
        if field.type.scale is not None:
            kwargs["decimal_places"] = field.type.scale
    return kwargs


def _writable_fields(entity: EntitySpec) -> list[FieldSpec]:
    auto_fields = {entity.primary_key} | entity.managed_fields
    return [f for f in entity.fields if f.name not in auto_fields]


class _InputModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


# =============================================================================
# Create/Update Schemas
# =============================================================================


def generate_create_schema(entity: EntitySpec) -> type[BaseModel]:
    """
    Generate a pydantic schema for creating an entity.

    Required fields without a default must be supplied; nullable fields
    default to ``None``.
    """
    field_definitions: dict[str, Any] = {}

    for field in _writable_fields(entity):
        python_type = _field_python_type(field)
        kwargs = _constraints(field)
        if field.default is not None:
            kwargs["default"] = field.default
        elif not field.required:
            kwargs["default"] = None
            python_type = python_type | None
        field_definitions[field.name] = (python_type, Field(**kwargs))

    return create_model(
        f"{entity.name}Create",
        __base__=_InputModel,
        __doc__=f"Create schema for {entity.name}",
        **field_definitions,
    )


def generate_update_schema(entity: EntitySpec) -> type[BaseModel]:
    """
    Generate a pydantic schema for updating an entity.

    Every field may be omitted. Only nullable fields accept an explicit null.
    Use ``model_dump(exclude_unset=True)`` to get the fields to change.
    """
    field_definitions: dict[str, Any] = {}

    for field in _writable_fields(entity):
        python_type = _field_python_type(field)
        if not field.required:
            python_type = python_type | None
        field_definitions[field.name] = (python_type, Field(default=None, **_constraints(field)))

    return create_model(
        f"{entity.name}Update",
        __base__=_InputModel,
        __doc__=f"Update schema for {entity.name}",
        **field_definitions,
    )
