"""
Domain-level exceptions.

These are transport-agnostic. The REST adapter converts them to responses
(see ``exception_handlers``); storage errors are translated into them at the
repository boundary with ``translate_storage_error``.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from domain_engine.specs.entity import EntitySpec

logger = logging.getLogger(__name__)


class DomainError(Exception):
    """Base class for every error the engine raises to callers."""

    status_code: int = 500
    error_type: str = "domain_error"

    def __init__(self, message: str | Sequence[str]):
        if isinstance(message, str):
            self.messages: list[str] = [message]
        else:
            self.messages = [str(m) for m in message] or ["Invalid input"]
        super().__init__("; ".join(self.messages))

    @property
    def public_message(self) -> str | list[str]:
        """Message safe to return to callers."""
        return self.messages[0] if len(self.messages) == 1 else list(self.messages)


class ValidationError(DomainError):
    """Malformed input, unknown relation, or a filter the entity cannot serve."""

    status_code = 400
    error_type = "validation_error"


class FilterDecodeError(ValidationError):
    """The transport-encoded filter could not be decoded into an expression tree."""

    error_type = "filter_decode_error"


class FilterFieldError(ValidationError):
    """A filter leaf names an unknown or non-exposed field, or misuses an operator."""

    error_type = "filter_field_error"

    def __init__(self, message: str, field: str):
        self.field = field
        super().__init__(message)


class NotFoundError(DomainError):
    """The operation target does not exist."""

    status_code = 404
    error_type = "not_found"

    def __init__(self, entity_name: str, entity_id: object):
        self.entity_name = entity_name
        self.entity_id = entity_id
        super().__init__(f"{entity_name} with id {entity_id} not found")


class ConflictError(DomainError):
    """A uniqueness constraint was violated."""

    status_code = 409
    error_type = "conflict"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class IntegrityError(DomainError):
    """A foreign key constraint was violated."""

    status_code = 400
    error_type = "integrity_error"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class InternalError(DomainError):
    """Anything unclassified. Never carries internal detail to the caller."""

    status_code = 500
    error_type = "internal_error"

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)

    @property
    def public_message(self) -> str:
        return "Internal server error"


# =============================================================================
# Storage Error Translation
# =============================================================================


def _parse_constraint_error(exc: str | Exception) -> tuple[str, str | None]:
    """Parse a constraint error message to extract type and column.

    Returns:
        (constraint_type, column_name_or_none)
    """
    err = exc if isinstance(exc, str) else str(exc)

    # SQLite: "UNIQUE constraint failed: Employee.email"
    if "UNIQUE constraint failed:" in err:
        parts = err.split("UNIQUE constraint failed:")[-1].strip()
        # "Employee.email, Employee.other" -> "email"
        first = parts.split(",")[0].strip()
        column = first.split(".")[-1].strip() if first else None
        return "unique", column or None

    # SQLite: "FOREIGN KEY constraint failed"
    if "FOREIGN KEY constraint failed" in err:
        return "foreign_key", None

    # SQLite: "NOT NULL constraint failed: Employee.firstName"
    if "NOT NULL constraint failed:" in err:
        column = err.split("NOT NULL constraint failed:")[-1].strip().split(".")[-1]
        return "not_null", column or None

    # PostgreSQL style messages, for storage collaborators that surface them
    if "duplicate key" in err and "unique constraint" in err:
        match = re.search(r"Key \((\w+)\)", err)
        return "unique", match.group(1) if match else None
    if "foreign key constraint" in err:
        match = re.search(r"Key \((\w+)\)", err)
        return "foreign_key", match.group(1) if match else None

    return "integrity", None


def _article(noun: str) -> str:
    return "An" if noun[:1].lower() in "aeiou" else "A"


def translate_storage_error(exc: Exception, entity: EntitySpec | None = None) -> DomainError:
    """
    Translate a storage exception into the domain error taxonomy.

    Args:
        exc: Exception raised by the storage driver
        entity: Entity being written, used for human-readable field names

    Returns:
        The domain error to raise (``InternalError`` when unrecognized)
    """
    if isinstance(exc, DomainError):
        return exc

    entity_name = entity.name if entity else "record"

    if isinstance(exc, sqlite3.IntegrityError):
        ctype, column = _parse_constraint_error(exc)
        field_spec = entity.get_field(column) if entity and column else None
        label = field_spec.display_name if field_spec else column

        if ctype == "unique":
            msg = (
                f"{_article(entity_name)} {entity_name} with this {label} already exists"
                if label
                else f"Duplicate value violates a unique constraint on {entity_name}"
            )
            return ConflictError(msg, field=column)
        if ctype == "foreign_key":
            msg = (
                f"Referenced record not found for {label} on {entity_name}"
                if label
                else f"Referenced record does not exist for {entity_name}"
            )
            return IntegrityError(msg, field=column)
        if ctype == "not_null":
            return ValidationError(f"{label or 'A required field'} is required for {entity_name}")

    logger.error("Unclassified storage error on %s", entity_name, exc_info=exc)
    return InternalError(f"Storage failure on {entity_name}: {exc}")


def messages_from_pydantic(exc: Exception) -> list[str]:
    """Flatten a pydantic ``ValidationError`` into readable messages."""
    errors = getattr(exc, "errors", None)
    if errors is None:
        return [str(exc)]
    messages: list[str] = []
    for err in errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        msg = err.get("msg", "Invalid value")
        messages.append(f"{loc}: {msg}" if loc else msg)
    return messages or [str(exc)]
