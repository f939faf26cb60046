"""
Domain Engine

Transaction-bound domain operations over a declarative entity model.

This package provides:
- Specs: entities, fields, relations and the entity registry
- Runtime: hook pipeline, filter compiler, relation loading, field exposure
- REST adapter: FastAPI routes generated from the registry
"""

from domain_engine._version import __version__
from domain_engine.runtime.config import EngineConfig
from domain_engine.runtime.engine import DomainEngine
from domain_engine.specs.registry import EntityRegistry

__all__ = ["DomainEngine", "EngineConfig", "EntityRegistry", "__version__"]
