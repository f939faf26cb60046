"""
Domain Engine Runtime

Transaction-bound entity operations (SQLite + Pydantic), with a FastAPI adapter.

This module provides:
- DomainEngine / EntityDomain: CRUD and association operations
- Hook pipeline: pre / op / post / commit / after stages
- Filter compiler: nested and/or filters with field exposure checks
- Route generation and app creation

Example usage:
    >>> from domain_engine.specs import EntityRegistry
    >>> from domain_engine.runtime import DomainEngine, create_app
    >>>
    >>> engine = DomainEngine(EntityRegistry.from_entities([...]))
    >>> app = create_app(engine)
"""

from domain_engine.runtime.config import EngineConfig
from domain_engine.runtime.database import DatabaseManager, Transaction
from domain_engine.runtime.domain import EntityDomain, ListResult
from domain_engine.runtime.engine import DomainEngine
from domain_engine.runtime.errors import (
    ConflictError,
    DomainError,
    FilterDecodeError,
    FilterFieldError,
    IntegrityError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from domain_engine.runtime.filter_compiler import (
    FilterAnd,
    FilterLeaf,
    FilterOperator,
    FilterOr,
    compile_filter,
    decode_where,
    encode_where,
)
from domain_engine.runtime.hook_registry import HookConfigError, build_hook_set, discover_hooks
from domain_engine.runtime.hooks import (
    CreateInput,
    DeleteInput,
    EntityHooks,
    FindByIdInput,
    FindManyInput,
    HookResult,
    HookSet,
    JunctionHooks,
    JunctionInput,
    Operation,
    Page,
    UpdateInput,
)
from domain_engine.runtime.logging import log_with_context, setup_logging
from domain_engine.runtime.route_generator import RouteGenerator, generate_routes
from domain_engine.runtime.server import create_app, run_app

__all__ = [
    # Engine
    "DomainEngine",
    "EntityDomain",
    "ListResult",
    "EngineConfig",
    "DatabaseManager",
    "Transaction",
    # Errors
    "DomainError",
    "ValidationError",
    "FilterDecodeError",
    "FilterFieldError",
    "NotFoundError",
    "ConflictError",
    "IntegrityError",
    "InternalError",
    # Filters
    "FilterOperator",
    "FilterLeaf",
    "FilterAnd",
    "FilterOr",
    "compile_filter",
    "encode_where",
    "decode_where",
    # Hooks
    "Operation",
    "CreateInput",
    "UpdateInput",
    "DeleteInput",
    "FindByIdInput",
    "FindManyInput",
    "JunctionInput",
    "Page",
    "HookResult",
    "EntityHooks",
    "JunctionHooks",
    "HookSet",
    "HookConfigError",
    "build_hook_set",
    "discover_hooks",
    # Logging
    "setup_logging",
    "log_with_context",
    # REST
    "RouteGenerator",
    "generate_routes",
    "create_app",
    "run_app",
]
