"""
Entity domain API.

One ``EntityDomain`` per entity. Every public operation runs through the hook
pipeline inside the caller's transaction (or one the pipeline opens), and
every value it returns has been through the field exposure filter.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from domain_engine.runtime.errors import (
    IntegrityError,
    InternalError,
    NotFoundError,
    ValidationError,
    messages_from_pydantic,
)
from domain_engine.runtime.filter_compiler import coerce_where, compile_filter
from domain_engine.runtime.hooks import (
    CreateInput,
    DeleteInput,
    FindByIdInput,
    FindManyInput,
    JunctionInput,
    Operation,
    Page,
    UpdateInput,
)
from domain_engine.runtime.model_generator import generate_create_schema, generate_update_schema
from domain_engine.runtime.relation_loader import parse_include
from domain_engine.runtime.repository import normalize_id
from domain_engine.specs.entity import RelationKind

if TYPE_CHECKING:
    from domain_engine.runtime.database import Transaction
    from domain_engine.runtime.engine import DomainEngine
    from domain_engine.specs.entity import EntitySpec
    from domain_engine.specs.registry import ResolvedRelation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ListResult:
    """A page of rows plus the full filtered count."""

    data: list[dict[str, Any]]
    total: int
    limit: int
    offset: int

    def to_envelope(self) -> dict[str, Any]:
        return {
            "data": self.data,
            "pagination": {"total": self.total, "limit": self.limit, "offset": self.offset},
        }


def _utcnow() -> datetime:
    return datetime.now(UTC)


class EntityDomain:
    """
    Transaction-bound CRUD and association operations for one entity.

    Every method accepts an optional ``tx``: pass the caller's transaction to
    compose operations atomically; omit it to let the operation run in its own
    transaction. A call made with no ``tx`` from inside a hook joins the
    transaction that hook runs in.
    """

    def __init__(self, engine: DomainEngine, entity: EntitySpec):
        self.engine = engine
        self.entity = entity
        self.name = entity.name
        self.repository = engine.repositories[entity.name]
        self.create_model = generate_create_schema(entity)
        self.update_model = generate_update_schema(entity)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def project(self, value: Any) -> Any:
        return self.engine.exposure.project(self.name, value)

    def _validate(self, model: type[BaseModel], payload: Any) -> BaseModel:
        if isinstance(payload, model):
            return payload
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(exclude_unset=True)
        if not isinstance(payload, Mapping):
            raise ValidationError(f"{self.name} payload must be an object")
        try:
            return model.model_validate(dict(payload))
        except PydanticValidationError as e:
            raise ValidationError(messages_from_pydantic(e)) from e

    def _revalidate_data(self, model: type[BaseModel], data: Any) -> BaseModel:
        if isinstance(data, BaseModel):
            # model_copy(update=...) skips validation, so re-check the dumped values
            data = data.model_dump(exclude_unset=True)
        return self._validate(model, data)

    def _revalidate_create(self, inp: Any) -> CreateInput:
        if not isinstance(inp, CreateInput):
            raise InternalError(f"pre_create hook of {self.name} returned {type(inp).__name__}")
        return replace(inp, data=self._revalidate_data(self.create_model, inp.data))

    def _revalidate_update(self, inp: Any) -> UpdateInput:
        if not isinstance(inp, UpdateInput):
            raise InternalError(f"pre_update hook of {self.name} returned {type(inp).__name__}")
        return replace(inp, data=self._revalidate_data(self.update_model, inp.data))

    def _relation(self, name: str) -> ResolvedRelation:
        relation = self.engine.registry.get_relation(self.name, name)
        if relation is None:
            raise ValidationError(f"Unknown relation '{name}' on {self.name}")
        return relation

    def _many_to_many(self, name: str) -> ResolvedRelation:
        relation = self._relation(name)
        if not relation.spec.is_many_to_many:
            raise ValidationError(f"Relation '{name}' of {self.name} is not many-to-many")
        return relation

    def _require(self, tx: Transaction, id: Any) -> dict[str, Any]:
        row = self.repository.fetch_by_id(tx, id)
        if row is None:
            raise NotFoundError(self.name, id)
        return row

    def _require_targets(
        self, tx: Transaction, relation: ResolvedRelation, ids: Iterable[Any]
    ) -> None:
        """Raise ``IntegrityError`` unless every id names a live row of the relation target."""
        target = relation.target.name
        found = self.engine.repositories[target].fetch_by_ids(tx, ids)
        missing = [key for key in dict.fromkeys(normalize_id(i) for i in ids) if key not in found]
        if missing:
            raise IntegrityError(
                f"Unknown {target} id(s) for {relation.name}: {', '.join(map(str, missing))}",
                field=relation.name,
            )

    async def _run(
        self,
        operation: Operation,
        inp: Any,
        raw: Any,
        op: Any,
        tx: Transaction | None,
        context: Any,
        revalidate: Any = None,
    ) -> Any:
        stages = self.engine.hooks.for_entity(self.name, operation)
        return await self.engine.pipeline.execute(
            stages, inp, raw, op, tx=tx, context=context, revalidate=revalidate
        )

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    def _insert(self, tx: Transaction, data: BaseModel) -> dict[str, Any]:
        values = data.model_dump()
        values[self.entity.primary_key] = uuid4()
        if self.entity.timestamps:
            now = _utcnow()
            values[self.entity.timestamp_names.created] = now
            values[self.entity.timestamp_names.updated] = now
        return self.repository.insert(tx, values)

    async def _create(self, raw: Any, tx: Transaction | None, context: Any) -> dict[str, Any]:
        data = self._validate(self.create_model, raw)
        return await self._run(
            Operation.CREATE,
            CreateInput(data=data),
            raw,
            lambda inp, tx, ctx: self._insert(tx, inp.data),
            tx,
            context,
            self._revalidate_create,
        )

    async def create(
        self, raw: Any, tx: Transaction | None = None, context: Any = None
    ) -> dict[str, Any]:
        """
        Create an entity.

        Args:
            raw: Payload (dict or create model instance)
            tx: Caller transaction
            context: Opaque value passed to hooks

        Returns:
            The created entity, projected

        Raises:
            ValidationError: Invalid payload or rejected by a hook
            ConflictError: Unique constraint violated
            IntegrityError: Referenced record does not exist
        """
        return self.project(await self._create(raw, tx, context))

    def inline_relations(self) -> list[ResolvedRelation]:
        """Relations whose children can be created inline (the child holds the foreign key)."""
        nested = []
        for relation in self.engine.registry.get_relations(self.name):
            if relation.kind == RelationKind.ONE_TO_MANY:
                nested.append(relation)
            elif relation.kind == RelationKind.ONE_TO_ONE and not self.entity.get_field(
                relation.spec.foreign_key or ""
            ):
                nested.append(relation)
        return nested

    async def _create_nested(
        self, raw: Any, tx: Transaction, context: Any
    ) -> tuple[dict[str, Any], list[str]]:
        if not isinstance(raw, Mapping):
            raise ValidationError(f"{self.name} payload must be an object")
        nested = {r.name: r for r in self.inline_relations()}
        base = {k: v for k, v in raw.items() if k not in nested}
        parent = await self._create(base, tx, context)
        parent_id = parent[self.entity.primary_key]

        for name, relation in nested.items():
            payload = raw.get(name)
            if payload is None:
                continue
            child_domain = self.engine.domain(relation.target.name)
            fk = relation.spec.foreign_key
            assert fk is not None
            if relation.kind == RelationKind.ONE_TO_MANY:
                if not isinstance(payload, list):
                    raise ValidationError(f"'{name}' must be a list of {relation.target.name}")
                children = payload
            else:
                children = [payload]
            for child in children:
                if not isinstance(child, Mapping):
                    raise ValidationError(f"Each item of '{name}' must be an object")
                await child_domain._create_nested({**child, fk: parent_id}, tx, context)
        return parent, list(nested)

    async def create_with_relations(
        self, raw: Any, tx: Transaction | None = None, context: Any = None
    ) -> dict[str, Any]:
        """
        Create an entity together with nested one-to-many / inverse one-to-one children.

        Children are created through their own entity's pipeline (hooks
        included) in the same transaction; any failure rolls back everything.

        Returns:
            The parent with the inline-creatable relations included, projected
        """
        if tx is None:
            async with self.engine.transaction() as own_tx:
                return await self.create_with_relations(raw, own_tx, context)
        parent, included = await self._create_nested(raw, tx, context)
        return await self.find_by_id(
            parent[self.entity.primary_key], tx=tx, include=included, context=context
        )

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    async def find_by_id(
        self,
        id: Any,
        tx: Transaction | None = None,
        include: str | Iterable[str] | None = None,
        context: Any = None,
    ) -> dict[str, Any]:
        """
        Fetch one entity.

        Raises:
            NotFoundError: No live row with this id
            ValidationError: An include name is not a relation of the entity
        """
        names = tuple(parse_include(include))
        self.engine.loader.resolve(self.name, names)

        def op(inp: FindByIdInput, tx: Transaction, ctx: Any) -> dict[str, Any]:
            row = self._require(tx, inp.id)
            return self.engine.loader.load_one(tx, self.entity, row, inp.include)

        result = await self._run(
            Operation.FIND_BY_ID, FindByIdInput(id=id, include=names), id, op, tx, context
        )
        return self.project(result)

    def _page(
        self, limit: int | None, offset: int | None, order_by: str | None, order_direction: str
    ) -> Page:
        config = self.engine.config
        if limit is None:
            limit = config.default_limit
        if limit < 1:
            raise ValidationError("limit must be a positive integer")
        limit = min(limit, config.max_limit)
        offset = offset or 0
        if offset < 0:
            raise ValidationError("offset cannot be negative")

        direction = (order_direction or "asc").lower()
        if direction not in ("asc", "desc"):
            raise ValidationError("orderDirection must be 'asc' or 'desc'")

        if order_by is not None:
            field = self.entity.get_field(order_by)
            if field is None or not field.exposed:
                raise ValidationError(f"Cannot order {self.name} by '{order_by}'")
            if not field.type.is_orderable:
                raise ValidationError(f"Field '{order_by}' of {self.name} is not orderable")
        return Page(limit=limit, offset=offset, order_by=order_by, order_direction=direction)

    async def find_many(
        self,
        tx: Transaction | None = None,
        where: Any = None,
        include: str | Iterable[str] | None = None,
        limit: int | None = None,
        offset: int | None = 0,
        order_by: str | None = None,
        order_direction: str = "asc",
        context: Any = None,
    ) -> ListResult:
        """
        List entities matching a filter.

        Args:
            tx: Caller transaction
            where: Transport token, dict tree or parsed filter expression
            include: Relation names to attach
            limit: Page size (default and maximum from config)
            offset: Rows to skip
            order_by: Exposed field to sort by (default insertion order)
            order_direction: "asc" or "desc"
            context: Opaque value passed to hooks

        Returns:
            ListResult whose total ignores limit and offset

        Raises:
            FilterDecodeError: Malformed filter
            FilterFieldError: Filter names an unknown or hidden field
            ValidationError: Bad paging/ordering or unknown include
        """
        expr = coerce_where(where)
        if expr is not None:
            # fail fast, before a transaction is opened
            compile_filter(expr, self.entity)
        names = tuple(parse_include(include))
        self.engine.loader.resolve(self.name, names)
        page = self._page(limit, offset, order_by, order_direction)

        def op(inp: FindManyInput, tx: Transaction, ctx: Any) -> ListResult:
            predicate = compile_filter(inp.where, self.entity) if inp.where is not None else None
            p = inp.page
            rows = self.repository.select(
                tx,
                predicate,
                order_by=p.order_by,
                descending=p.order_direction == "desc",
                limit=p.limit,
                offset=p.offset,
            )
            total = self.repository.count(tx, predicate)
            rows = self.engine.loader.load_relations(tx, self.entity, rows, inp.include)
            return ListResult(data=rows, total=total, limit=p.limit, offset=p.offset)

        raw = {"where": where, "include": include, "limit": limit, "offset": offset}
        result: ListResult = await self._run(
            Operation.FIND_MANY,
            FindManyInput(where=expr, include=names, page=page),
            raw,
            op,
            tx,
            context,
        )
        return replace(result, data=self.project(result.data))

    async def list_related(
        self, id: Any, relation: str, tx: Transaction | None = None
    ) -> list[dict[str, Any]] | dict[str, Any] | None:
        """Related entities of one owner (the ``GET /<plural>/{id}/<relation>`` sub-resource)."""
        resolved = self._relation(relation)
        if tx is None:
            async with self.engine.transaction() as own_tx:
                return await self.list_related(id, relation, own_tx)
        row = self._require(tx, id)
        self.engine.loader.load_one(tx, self.entity, row, [relation])
        return self.engine.exposure.project(resolved.target.name, row[relation])

    # -------------------------------------------------------------------------
    # Update / Delete
    # -------------------------------------------------------------------------

    def _apply_update(self, tx: Transaction, inp: UpdateInput) -> dict[str, Any]:
        self._require(tx, inp.id)
        values = inp.data.model_dump(exclude_unset=True)
        if self.entity.timestamps:
            values[self.entity.timestamp_names.updated] = _utcnow()
        self.repository.update(tx, inp.id, values)
        return self._require(tx, inp.id)

    async def update(
        self, id: Any, raw: Any, tx: Transaction | None = None, context: Any = None
    ) -> dict[str, Any]:
        """
        Partially update an entity; omitted fields keep their values.

        Raises:
            NotFoundError: No live row with this id
            ValidationError: Invalid payload
            ConflictError: Unique constraint violated
        """
        data = self._validate(self.update_model, raw)
        result = await self._run(
            Operation.UPDATE,
            UpdateInput(id=id, data=data),
            raw,
            lambda inp, tx, ctx: self._apply_update(tx, inp),
            tx,
            context,
            self._revalidate_update,
        )
        return self.project(result)

    def _apply_delete(self, tx: Transaction, inp: DeleteInput) -> dict[str, Any]:
        row = self._require(tx, inp.id)
        self.engine.junctions.purge(tx, self.name, inp.id)
        self.repository.delete(tx, inp.id, deleted_at=_utcnow())
        return row

    async def delete(
        self, id: Any, tx: Transaction | None = None, context: Any = None
    ) -> dict[str, Any]:
        """
        Delete an entity and every junction edge that references it.

        Soft-delete entities are marked deleted instead of removed.

        Returns:
            The deleted entity, projected

        Raises:
            NotFoundError: No live row with this id
            IntegrityError: Other rows still reference it (restrict)
        """
        result = await self._run(
            Operation.DELETE,
            DeleteInput(id=id),
            id,
            lambda inp, tx, ctx: self._apply_delete(tx, inp),
            tx,
            context,
        )
        return self.project(result)

    # -------------------------------------------------------------------------
    # Associations
    # -------------------------------------------------------------------------

    async def _associate(
        self,
        operation: Operation,
        action: str,
        id: Any,
        relation: str,
        related_ids: Iterable[Any],
        tx: Transaction | None,
        context: Any,
    ) -> int:
        resolved = self._many_to_many(relation)
        if isinstance(related_ids, str | bytes) or not isinstance(related_ids, Iterable):
            raise ValidationError("ids must be a list")
        ids = tuple(related_ids)
        junctions = self.engine.junctions

        def op(inp: JunctionInput, tx: Transaction, ctx: Any) -> int:
            self._require(tx, inp.owner_id)
            if action in ("add", "replace"):
                self._require_targets(tx, resolved, inp.related_ids)
            if action == "add":
                return junctions.add(tx, resolved, inp.owner_id, inp.related_ids)
            if action == "replace":
                return junctions.replace(tx, resolved, inp.owner_id, inp.related_ids)
            return junctions.remove(tx, resolved, inp.owner_id, inp.related_ids)

        stages = self.engine.hooks.for_junction(self.name, relation, operation)
        return await self.engine.pipeline.execute(
            stages,
            JunctionInput(owner_id=id, relation=relation, related_ids=ids),
            {"id": id, "relation": relation, "ids": list(ids)},
            op,
            tx=tx,
            context=context,
        )

    async def add_associations(
        self,
        id: Any,
        relation: str,
        related_ids: Iterable[Any],
        tx: Transaction | None = None,
        context: Any = None,
    ) -> int:
        """
        Link ``id`` to each related id. Existing edges are left alone.

        Returns:
            Number of new edges
        """
        return await self._associate(
            Operation.ADD_JUNCTION, "add", id, relation, related_ids, tx, context
        )

    async def remove_associations(
        self,
        id: Any,
        relation: str,
        related_ids: Iterable[Any],
        tx: Transaction | None = None,
        context: Any = None,
    ) -> int:
        """
        Unlink ``id`` from each related id. Missing edges are ignored.

        Returns:
            Number of removed edges
        """
        return await self._associate(
            Operation.REMOVE_JUNCTION, "remove", id, relation, related_ids, tx, context
        )

    async def replace_associations(
        self,
        id: Any,
        relation: str,
        related_ids: Iterable[Any],
        tx: Transaction | None = None,
        context: Any = None,
    ) -> int:
        """
        Make ``related_ids`` the full set of associations (runs the add hooks).

        Returns:
            Number of edges after the replacement
        """
        return await self._associate(
            Operation.ADD_JUNCTION, "replace", id, relation, related_ids, tx, context
        )

    async def has_association(
        self, id: Any, relation: str, related_id: Any, tx: Transaction | None = None
    ) -> bool:
        resolved = self._many_to_many(relation)
        if tx is None:
            async with self.engine.transaction() as own_tx:
                return await self.has_association(id, relation, related_id, own_tx)
        return self.engine.junctions.has(tx, resolved, id, related_id)
