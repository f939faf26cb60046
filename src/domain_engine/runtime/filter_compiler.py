"""
Filter expression parsing, transport encoding and compilation.

A filter expression is a tree of leaves ``{"field", "op", "value"}`` and
composites ``{"and": [...]}`` / ``{"or": [...]}``. Groups of the same kind
nest freely; at most ``MAX_FILTER_DEPTH`` alternating levels are accepted. On the
wire it travels as a single opaque token: compact JSON, base64url encoded,
padding stripped.

Two failure classes are kept apart:
- ``FilterDecodeError``: the token or the tree shape is malformed
- ``FilterFieldError``: the tree is well formed but names an unknown or
  non-exposed field, or uses an operator the field cannot support

``compile_filter`` produces a storage-agnostic predicate (``Comparison``,
``AllOf``, ``AnyOf``); ``query_builder`` renders it as SQL.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Annotated, Any, Union
from uuid import UUID

from pydantic import Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from domain_engine.runtime.errors import FilterDecodeError, FilterFieldError
from domain_engine.specs.entity import EntitySpec, FieldSpec, ScalarType


class FilterOperator(StrEnum):
    """Supported filter operators."""

    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    LIKE = "like"  # case-insensitive, % wildcards
    IN = "in"
    NOT_IN = "notIn"
    IS_NULL = "isNull"


# Accepted spellings that map onto a canonical operator
_OPERATOR_ALIASES: dict[str, FilterOperator] = {
    "ilike": FilterOperator.LIKE,
    "not_in": FilterOperator.NOT_IN,
    "nin": FilterOperator.NOT_IN,
    "isnull": FilterOperator.IS_NULL,
    "is_null": FilterOperator.IS_NULL,
}

ORDERING_OPERATORS = frozenset(
    {FilterOperator.GT, FilterOperator.GTE, FilterOperator.LT, FilterOperator.LTE}
)

# Alternating and/or levels accepted after same-kind groups are merged.
# SQLite's parser stack overflows on much deeper nesting.
MAX_FILTER_DEPTH = 24


def parse_operator(name: str) -> FilterOperator:
    """Resolve an operator name or alias, raising ``FilterDecodeError`` when unknown."""
    try:
        return FilterOperator(name)
    except ValueError:
        pass
    op = _OPERATOR_ALIASES.get(name.lower()) if isinstance(name, str) else None
    if op is None:
        raise FilterDecodeError(f"Unknown filter operator '{name}'")
    return op


# =============================================================================
# Expression Tree
# =============================================================================


@dataclass(frozen=True)
class FilterLeaf:
    """A single ``field op value`` comparison."""

    field: str
    op: FilterOperator
    value: Any = None


@dataclass(frozen=True)
class FilterAnd:
    children: tuple[FilterExpression, ...]


@dataclass(frozen=True)
class FilterOr:
    children: tuple[FilterExpression, ...]


FilterExpression = Union[FilterLeaf, FilterAnd, FilterOr]  # noqa: UP007


def parse_expression(node: Any) -> FilterExpression:
    """
    Parse a decoded JSON tree into a filter expression.

    Examples:
        {"field": "firstName", "op": "eq", "value": "Jane"}
        {"and": [{...}, {"or": [{...}, {...}]}]}

    Raises:
        FilterDecodeError: If the tree is malformed
    """
    if isinstance(node, FilterLeaf | FilterAnd | FilterOr):
        return node
    if not isinstance(node, dict):
        raise FilterDecodeError(f"Filter node must be an object, got {type(node).__name__}")

    if "and" in node or "or" in node:
        if len(node) != 1:
            raise FilterDecodeError("A composite filter node must contain only 'and' or 'or'")
        key, children = next(iter(node.items()))
        if not isinstance(children, list):
            raise FilterDecodeError(f"'{key}' must hold a list of filter nodes")
        parsed = tuple(parse_expression(child) for child in children)
        return FilterAnd(parsed) if key == "and" else FilterOr(parsed)

    if "field" not in node:
        raise FilterDecodeError("A filter leaf requires 'field'")
    if "op" in node and "operator" in node:
        raise FilterDecodeError("A filter leaf cannot set both 'op' and 'operator'")
    op_name = node.get("op", node.get("operator"))
    if op_name is None:
        raise FilterDecodeError("A filter leaf requires 'op'")
    unknown = set(node) - {"field", "op", "operator", "value"}
    if unknown:
        raise FilterDecodeError(f"Unexpected keys in filter leaf: {sorted(unknown)}")

    field_name = node["field"]
    if not isinstance(field_name, str) or not field_name:
        raise FilterDecodeError("Filter leaf 'field' must be a non-empty string")
    if not isinstance(op_name, str):
        raise FilterDecodeError("Filter leaf 'op' must be a string")

    return FilterLeaf(field=field_name, op=parse_operator(op_name), value=node.get("value"))


def expression_to_dict(expr: FilterExpression) -> dict[str, Any]:
    """Inverse of ``parse_expression``."""
    if isinstance(expr, FilterAnd):
        return {"and": [expression_to_dict(c) for c in expr.children]}
    if isinstance(expr, FilterOr):
        return {"or": [expression_to_dict(c) for c in expr.children]}
    return {"field": expr.field, "op": expr.op.value, "value": expr.value}


# =============================================================================
# Transport Encoding
# =============================================================================


def encode_where(expr: FilterExpression | dict[str, Any]) -> str:
    """Serialize a filter to the transport token (base64url of compact JSON)."""
    tree = expression_to_dict(expr) if not isinstance(expr, dict) else expr
    raw = json.dumps(tree, separators=(",", ":"), default=str).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_where(token: str) -> FilterExpression:
    """
    Decode a transport token into a filter expression.

    Raises:
        FilterDecodeError: On malformed base64, JSON or tree structure
    """
    if not token or not token.strip():
        raise FilterDecodeError("Empty filter token")
    token = token.strip()
    padded = token + "=" * (-len(token) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, ValueError, UnicodeEncodeError) as e:
        raise FilterDecodeError("Filter token is not valid base64url") from e
    try:
        tree = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise FilterDecodeError("Filter token does not contain valid JSON") from e
    except RecursionError as e:
        raise FilterDecodeError("Filter token is nested too deeply") from e
    try:
        return parse_expression(tree)
    except RecursionError as e:
        raise FilterDecodeError("Filter token is nested too deeply") from e


def coerce_where(where: str | dict[str, Any] | FilterExpression | None) -> FilterExpression | None:
    """Accept a transport token, a plain dict tree or a parsed expression."""
    if where is None:
        return None
    if isinstance(where, str):
        return decode_where(where)
    return parse_expression(where)


# =============================================================================
# Compiled Predicate
# =============================================================================


@dataclass(frozen=True)
class Comparison:
    """A validated leaf with its value coerced to the field's Python type."""

    field: str
    operator: FilterOperator
    value: Any
    field_spec: FieldSpec


@dataclass(frozen=True)
class AllOf:
    parts: tuple[Predicate, ...]


@dataclass(frozen=True)
class AnyOf:
    parts: tuple[Predicate, ...]


Predicate = Union[Comparison, AllOf, AnyOf]  # noqa: UP007


_SCALAR_PYTHON_TYPES: dict[ScalarType, Any] = {
    ScalarType.STR: str,
    ScalarType.TEXT: str,
    ScalarType.EMAIL: str,
    ScalarType.URL: str,
    ScalarType.INT: int,
    ScalarType.BIGINT: int,
    ScalarType.DECIMAL: Decimal,
    ScalarType.BOOL: bool,
    ScalarType.DATE: date,
    ScalarType.DATETIME: datetime,
    ScalarType.UUID: UUID,
    ScalarType.JSON: Any,
}

# ids are UUIDs when they parse as one, opaque text otherwise
_REF_TYPE = Annotated[Union[UUID, str], Field(union_mode="left_to_right")]  # noqa: UP007

_adapters: dict[Any, TypeAdapter[Any]] = {}


def _adapter_for(py_type: Any) -> TypeAdapter[Any]:
    adapter = _adapters.get(py_type)
    if adapter is None:
        adapter = _adapters[py_type] = TypeAdapter(py_type)
    return adapter


def python_type_for(field: FieldSpec) -> Any:
    """Python type used to validate values of ``field``."""
    ft = field.type
    if ft.kind == "scalar" and ft.scalar_type is not None:
        return _SCALAR_PYTHON_TYPES[ft.scalar_type]
    if ft.kind == "ref":
        return _REF_TYPE
    # enum and spatial values are text
    return str


def _coerce_scalar(field: FieldSpec, value: Any) -> Any:
    if value is None:
        raise FilterFieldError(
            f"Filter on '{field.name}' compares with null; use isNull instead", field.name
        )
    try:
        coerced = _adapter_for(python_type_for(field)).validate_python(value)
    except PydanticValidationError as e:
        detail = e.errors()[0].get("msg", "invalid value") if e.errors() else "invalid value"
        raise FilterFieldError(
            f"Invalid value for filter field '{field.name}': {detail}", field.name
        ) from e
    if field.type.kind == "enum" and field.type.enum_values and coerced not in field.type.enum_values:
        raise FilterFieldError(
            f"Invalid value for filter field '{field.name}': '{coerced}' is not one of "
            f"{field.type.enum_values}",
            field.name,
        )
    return coerced


def _compile_leaf(leaf: FilterLeaf, entity: EntitySpec) -> Comparison:
    field = entity.get_field(leaf.field)
    if field is None:
        raise FilterFieldError(
            f"Unknown filter field '{leaf.field}' on {entity.name}", leaf.field
        )
    if not field.filterable:
        raise FilterFieldError(
            f"Field '{leaf.field}' of {entity.name} cannot be used in a filter", leaf.field
        )

    op = leaf.op
    if (op in ORDERING_OPERATORS or op == FilterOperator.LIKE) and not field.type.is_orderable:
        raise FilterFieldError(
            f"Operator '{op.value}' is not supported on field '{field.name}'", field.name
        )

    if op == FilterOperator.IS_NULL:
        if not isinstance(leaf.value, bool):
            raise FilterFieldError(
                f"isNull on '{field.name}' requires a boolean value", field.name
            )
        return Comparison(field.name, op, leaf.value, field)

    if op in (FilterOperator.IN, FilterOperator.NOT_IN):
        if not isinstance(leaf.value, list):
            raise FilterFieldError(
                f"Operator '{op.value}' on '{field.name}' requires a list value", field.name
            )
        values = tuple(_coerce_scalar(field, v) for v in leaf.value)
        return Comparison(field.name, op, values, field)

    if op == FilterOperator.LIKE:
        if not isinstance(leaf.value, str):
            raise FilterFieldError(
                f"Operator 'like' on '{field.name}' requires a string pattern", field.name
            )
        return Comparison(field.name, op, leaf.value, field)

    return Comparison(field.name, op, _coerce_scalar(field, leaf.value), field)


def _group(kind: type[AllOf] | type[AnyOf], parts: list[Predicate]) -> Predicate:
    """Build a group, absorbing children of the same kind and unwrapping single members."""
    flat: list[Predicate] = []
    for part in parts:
        if isinstance(part, kind):
            flat.extend(part.parts)
        else:
            flat.append(part)
    if len(flat) == 1:
        return flat[0]
    return kind(tuple(flat))


def predicate_depth(predicate: Predicate) -> int:
    """Number of nested groups; a lone comparison has depth 0."""
    if isinstance(predicate, Comparison):
        return 0
    return 1 + max((predicate_depth(part) for part in predicate.parts), default=0)


def compile_filter(
    expression: FilterExpression | dict[str, Any] | str, entity: EntitySpec
) -> Predicate:
    """
    Validate a filter against an entity and compile it to a predicate.

    Same-kind groups are merged (an ``and`` inside an ``and`` joins its parent)
    and single-member groups are unwrapped, so only alternating ``and``/``or``
    levels count towards ``MAX_FILTER_DEPTH``.

    Args:
        expression: Parsed expression, dict tree or transport token
        entity: Entity the filter applies to

    Returns:
        Storage-agnostic predicate tree

    Raises:
        FilterDecodeError: If the expression is empty, malformed or nested
            deeper than ``MAX_FILTER_DEPTH`` alternating groups
        FilterFieldError: If a leaf names an unknown or non-exposed field,
            or misuses an operator
    """
    expr = coerce_where(expression)
    if expr is None:
        raise FilterDecodeError("Empty filter")

    def _compile(node: FilterExpression) -> Predicate:
        if isinstance(node, FilterAnd):
            return _group(AllOf, [_compile(c) for c in node.children])
        if isinstance(node, FilterOr):
            return _group(AnyOf, [_compile(c) for c in node.children])
        return _compile_leaf(node, entity)

    try:
        predicate = _compile(expr)
    except RecursionError as e:
        raise FilterDecodeError("Filter is nested too deeply") from e
    if predicate_depth(predicate) > MAX_FILTER_DEPTH:
        raise FilterDecodeError(
            f"Filter nests more than {MAX_FILTER_DEPTH} alternating and/or groups"
        )
    return predicate


def predicate_fields(predicate: Predicate) -> set[str]:
    """All field names a predicate touches."""
    if isinstance(predicate, Comparison):
        return {predicate.field}
    names: set[str] = set()
    for part in predicate.parts:
        names |= predicate_fields(part)
    return names
