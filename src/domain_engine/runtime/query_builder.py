"""
SQL rendering for compiled filter predicates, ordering and pagination.

The filter compiler knows nothing about SQL; this module is the storage
side of that contract for SQLite.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from domain_engine.runtime.filter_compiler import AllOf, AnyOf

if TYPE_CHECKING:
    from domain_engine.runtime.filter_compiler import Predicate
    from domain_engine.specs.entity import FieldSpec

# Valid SQL identifier pattern (alphanumeric and underscore, not starting with digit)
_VALID_IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def validate_sql_identifier(name: str, context: str = "identifier") -> str:
    """
    Validate that a string is a safe SQL identifier.

    Args:
        name: The identifier to validate
        context: Description of what's being validated (for error messages)

    Returns:
        The validated name

    Raises:
        ValueError: If the name contains invalid characters
    """
    if not name:
        raise ValueError(f"SQL {context} cannot be empty")
    if not _VALID_IDENTIFIER_PATTERN.match(name):
        raise ValueError(
            f"Invalid SQL {context} '{name}': must contain only letters, digits, "
            "and underscores, and cannot start with a digit"
        )
    return name


def quote_identifier(name: str) -> str:
    """Validate and double-quote an identifier (column names are camelCase)."""
    return f'"{validate_sql_identifier(name)}"'


# =============================================================================
# Value Conversion
# =============================================================================


def format_datetime(value: datetime) -> str:
    """Canonical stored form: UTC, microsecond precision, so text order is time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def to_sqlite_value(value: Any, field_spec: FieldSpec | None = None) -> Any:
    """Convert a Python value to its SQLite representation."""
    if value is None:
        return None
    if field_spec is not None and field_spec.type.kind == "scalar":
        if field_spec.type.scalar_type is not None and field_spec.type.scalar_type.value == "json":
            return json.dumps(value, default=str, sort_keys=True)
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return format_datetime(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str, sort_keys=True)
    return value


# =============================================================================
# Predicate Rendering
# =============================================================================


OPERATOR_SQL: dict[str, str] = {
    "eq": "{field} = ?",
    "ne": "{field} != ?",
    "gt": "{field} > ?",
    "gte": "{field} >= ?",
    "lt": "{field} < ?",
    "lte": "{field} <= ?",
    "like": "LOWER({field}) LIKE LOWER(?)",
    "in": "{field} IN ({placeholders})",
    "notIn": "{field} NOT IN ({placeholders})",
}


def _is_disjunction(predicate: Predicate) -> bool:
    return isinstance(predicate, AnyOf) and len(predicate.parts) > 1


def render_predicate(predicate: Predicate, table_alias: str | None = None) -> tuple[str, list[Any]]:
    """
    Convert a compiled predicate to an SQL fragment and parameters.

    Args:
        predicate: Compiled predicate tree
        table_alias: Optional table alias for column references

    Returns:
        Tuple of (sql_fragment, parameters)
    """
    if isinstance(predicate, AllOf | AnyOf):
        if not predicate.parts:
            # empty and: true, empty or: false
            return ("1 = 1" if isinstance(predicate, AllOf) else "1 = 0"), []
        is_and = isinstance(predicate, AllOf)
        fragments: list[str] = []
        params: list[Any] = []
        for part in predicate.parts:
            sql, part_params = render_predicate(part, table_alias)
            # AND binds tighter than OR, so only an OR under an AND needs parentheses
            fragments.append(f"({sql})" if is_and and _is_disjunction(part) else sql)
            params.extend(part_params)
        return (" AND " if is_and else " OR ").join(fragments), params

    column = quote_identifier(predicate.field)
    field_ref = f"{table_alias}.{column}" if table_alias else column
    op = predicate.operator.value

    if op == "isNull":
        return (f"{field_ref} IS NULL" if predicate.value else f"{field_ref} IS NOT NULL"), []

    if op in ("in", "notIn"):
        values = [to_sqlite_value(v, predicate.field_spec) for v in predicate.value]
        if not values:
            return ("1 = 0" if op == "in" else "1 = 1"), []
        placeholders = ", ".join("?" * len(values))
        return OPERATOR_SQL[op].format(field=field_ref, placeholders=placeholders), values

    return (
        OPERATOR_SQL[op].format(field=field_ref),
        [to_sqlite_value(predicate.value, predicate.field_spec)],
    )


# =============================================================================
# Select Builder
# =============================================================================


@dataclass
class QueryBuilder:
    """
    Builds SELECT and COUNT statements for a single table.

    Default ordering is insertion order (``rowid``).
    """

    table: str
    predicate: Predicate | None = None
    extra_conditions: list[tuple[str, list[Any]]] = field(default_factory=list)
    order_by: str | None = None
    descending: bool = False
    limit: int | None = None
    offset: int = 0

    def where_raw(self, sql: str, params: list[Any] | None = None) -> QueryBuilder:
        self.extra_conditions.append((sql, list(params or [])))
        return self

    def exclude_soft_deleted(self, deleted_field: str | None) -> QueryBuilder:
        if deleted_field:
            self.where_raw(f"{quote_identifier(deleted_field)} IS NULL")
        return self

    def build_where(self) -> tuple[str, list[Any]]:
        """Build WHERE clause and parameters."""
        fragments: list[str] = []
        params: list[Any] = []
        for sql, cond_params in self.extra_conditions:
            fragments.append(sql)
            params.extend(cond_params)
        if self.predicate is not None:
            sql, pred_params = render_predicate(self.predicate)
            fragments.append(f"({sql})" if _is_disjunction(self.predicate) else sql)
            params.extend(pred_params)
        if not fragments:
            return "", []
        return "WHERE " + " AND ".join(fragments), params

    def build_order_by(self) -> str:
        direction = "DESC" if self.descending else "ASC"
        if self.order_by:
            # rowid tiebreak keeps pages stable when the sort key repeats
            return f"ORDER BY {quote_identifier(self.order_by)} {direction}, rowid {direction}"
        return f"ORDER BY rowid {direction}"

    def build_select(self, columns: list[str] | None = None) -> tuple[str, list[Any]]:
        """Build the complete SELECT statement."""
        cols = ", ".join(quote_identifier(c) for c in columns) if columns else "*"
        where_sql, params = self.build_where()
        parts = [f"SELECT {cols} FROM {quote_identifier(self.table)}"]
        if where_sql:
            parts.append(where_sql)
        parts.append(self.build_order_by())
        if self.limit is not None:
            parts.append("LIMIT ? OFFSET ?")
            params = [*params, self.limit, self.offset]
        elif self.offset:
            parts.append("LIMIT -1 OFFSET ?")
            params = [*params, self.offset]
        return " ".join(parts), params

    def build_count(self) -> tuple[str, list[Any]]:
        """Build COUNT query over the same filter, ignoring limit and offset."""
        where_sql, params = self.build_where()
        sql = f"SELECT COUNT(*) AS total FROM {quote_identifier(self.table)}"
        if where_sql:
            sql = f"{sql} {where_sql}"
        return sql, params
