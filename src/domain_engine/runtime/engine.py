"""
Domain engine - wires registry, hooks, storage and domains together.

Example::

    registry = EntityRegistry.from_entities([department, employee])
    engine = DomainEngine(registry, hooks=HookSet.build(...), config=EngineConfig.from_env())
    engine.initialize()

    async with engine.transaction() as tx:
        dept = await engine.domain("Department").create({"name": "R&D"}, tx=tx)
        await engine.domain("Employee").create({"firstName": "Jane", "departmentId": dept["id"]}, tx=tx)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from domain_engine.runtime.after_hooks import AfterHookDispatcher
from domain_engine.runtime.config import EngineConfig
from domain_engine.runtime.database import DatabaseManager, Transaction
from domain_engine.runtime.domain import EntityDomain
from domain_engine.runtime.errors import ValidationError
from domain_engine.runtime.exposure import FieldExposureFilter
from domain_engine.runtime.hooks import HookSet
from domain_engine.runtime.junction import JunctionManager
from domain_engine.runtime.pipeline import HookPipelineExecutor
from domain_engine.runtime.relation_loader import RelationLoader
from domain_engine.runtime.repository import Repository
from domain_engine.specs.registry import EntityRegistry

logger = logging.getLogger(__name__)


class DomainEngine:
    """
    Process-wide engine: one per application.

    The registry and hook set are read-only after construction and shared by
    every request.
    """

    def __init__(
        self,
        registry: EntityRegistry,
        hooks: HookSet | None = None,
        db: DatabaseManager | None = None,
        config: EngineConfig | None = None,
    ):
        """
        Initialize the engine.

        Args:
            registry: Entity registry
            hooks: Hook set (defaults to no hooks)
            db: Database manager (defaults to one at ``config.db_path``)
            config: Engine configuration (defaults to ``EngineConfig.from_env()``)
        """
        self.config = config or EngineConfig.from_env()
        self.registry = registry
        self.hooks = hooks or HookSet()
        self.hooks.validate_against(registry)
        self.db = db or DatabaseManager(self.config.db_path)

        self.dispatcher = AfterHookDispatcher()
        self.pipeline = HookPipelineExecutor(self.db, self.dispatcher)
        self.exposure = FieldExposureFilter(registry)
        self.junctions = JunctionManager(registry)
        self.repositories = {e.name: Repository(e) for e in registry.entities}
        self.loader = RelationLoader(registry, self.repositories, self.junctions)
        self._domains = {e.name: EntityDomain(self, e) for e in registry.entities}

    def initialize(self) -> None:
        """Create entity tables, then junction tables."""
        self.db.create_all_tables(self.registry)
        logger.info("Domain engine ready with entities: %s", ", ".join(self._domains))

    def domain(self, entity_name: str) -> EntityDomain:
        """
        Get the domain API of an entity.

        Raises:
            ValidationError: If the entity is unknown
        """
        try:
            return self._domains[entity_name]
        except KeyError:
            raise ValidationError(f"Unknown entity '{entity_name}'") from None

    @property
    def domains(self) -> dict[str, EntityDomain]:
        return dict(self._domains)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """Open a transaction to share across several domain calls (or join the current one)."""
        async with self.db.transaction() as tx:
            yield tx

    async def shutdown(self) -> None:
        """Wait (bounded by config) for pending after-hooks."""
        if self.dispatcher.pending:
            logger.info("Draining %d pending after-hook(s)", self.dispatcher.pending)
        await self.dispatcher.drain(timeout=self.config.after_hook_drain_timeout)
