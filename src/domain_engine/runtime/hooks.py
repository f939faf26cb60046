"""
Hook types: operations, typed operation inputs and the frozen hook set.

Hook signatures per stage::

    pre(input, raw_input, tx, context)    -> HookResult | input | None
    post(input, result, tx, context)      -> HookResult | result | None
    after(result, context)                -> None

Any hook may be a plain function or ``async def``. Returning ``None`` keeps
the value unchanged. Returning ``HookResult(data, context)`` replaces the
value and updates the context (mapping contexts are merged).

Example::

    async def stamp_source(inp, raw, tx, context):
        return HookResult(inp.with_data(source="api"), {"audited": True})

    hooks = HookSet.build(
        entities={"Employee": EntityHooks(pre_create=stamp_source)},
        junctions={("Employee", "projects"): JunctionHooks(after_add=notify)},
    )
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, fields, replace
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel


class Operation(StrEnum):
    """Operations with a hook pipeline."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    FIND_BY_ID = "find_by_id"
    FIND_MANY = "find_many"
    ADD_JUNCTION = "add_junction"
    REMOVE_JUNCTION = "remove_junction"

    @property
    def is_entity_operation(self) -> bool:
        return self not in (Operation.ADD_JUNCTION, Operation.REMOVE_JUNCTION)


# =============================================================================
# Operation Inputs
# =============================================================================


@dataclass(frozen=True)
class CreateInput:
    data: BaseModel

    def with_data(self, **changes: Any) -> CreateInput:
        """Copy with some data fields replaced."""
        return replace(self, data=self.data.model_copy(update=changes))


@dataclass(frozen=True)
class UpdateInput:
    id: Any
    data: BaseModel

    def with_data(self, **changes: Any) -> UpdateInput:
        return replace(self, data=self.data.model_copy(update=changes))


@dataclass(frozen=True)
class DeleteInput:
    id: Any


@dataclass(frozen=True)
class FindByIdInput:
    id: Any
    include: tuple[str, ...] = ()


@dataclass(frozen=True)
class Page:
    limit: int
    offset: int = 0
    order_by: str | None = None
    order_direction: str = "asc"


@dataclass(frozen=True)
class FindManyInput:
    # parsed filter expression (see filter_compiler), or None
    where: Any = None
    include: tuple[str, ...] = ()
    page: Page = field(default_factory=lambda: Page(limit=10))


@dataclass(frozen=True)
class JunctionInput:
    owner_id: Any
    relation: str
    related_ids: tuple[Any, ...]


OperationInput = (
    CreateInput | UpdateInput | DeleteInput | FindByIdInput | FindManyInput | JunctionInput
)


@dataclass(frozen=True)
class HookResult:
    """Value returned by a pre or post hook that also wants to update the context."""

    data: Any
    context: Any = None


PreHook = Callable[[Any, Any, Any, Any], Any | Awaitable[Any]]
PostHook = Callable[[Any, Any, Any, Any], Any | Awaitable[Any]]
AfterHook = Callable[[Any, Any], None | Awaitable[None]]


@dataclass(frozen=True)
class HookStages:
    """The hooks that apply to one pipeline run."""

    pre: PreHook | None = None
    post: PostHook | None = None
    after: AfterHook | None = None
    # label used in logs, e.g. "Employee.create"
    label: str = ""

    @property
    def empty(self) -> bool:
        return self.pre is None and self.post is None and self.after is None


# =============================================================================
# Hook Set
# =============================================================================


@dataclass(frozen=True)
class EntityHooks:
    """Optional pre/post/after hooks for each entity operation."""

    pre_create: PreHook | None = None
    post_create: PostHook | None = None
    after_create: AfterHook | None = None
    pre_update: PreHook | None = None
    post_update: PostHook | None = None
    after_update: AfterHook | None = None
    pre_delete: PreHook | None = None
    post_delete: PostHook | None = None
    after_delete: AfterHook | None = None
    pre_find_by_id: PreHook | None = None
    post_find_by_id: PostHook | None = None
    after_find_by_id: AfterHook | None = None
    pre_find_many: PreHook | None = None
    post_find_many: PostHook | None = None
    after_find_many: AfterHook | None = None

    def stages(self, operation: Operation, label: str = "") -> HookStages:
        if not operation.is_entity_operation:
            raise ValueError(f"{operation} is not an entity operation")
        op = operation.value
        return HookStages(
            pre=getattr(self, f"pre_{op}"),
            post=getattr(self, f"post_{op}"),
            after=getattr(self, f"after_{op}"),
            label=label,
        )


@dataclass(frozen=True)
class JunctionHooks:
    """Optional hooks around adding and removing many-to-many edges."""

    pre_add: PreHook | None = None
    post_add: PostHook | None = None
    after_add: AfterHook | None = None
    pre_remove: PreHook | None = None
    post_remove: PostHook | None = None
    after_remove: AfterHook | None = None

    def stages(self, operation: Operation, label: str = "") -> HookStages:
        if operation == Operation.ADD_JUNCTION:
            return HookStages(self.pre_add, self.post_add, self.after_add, label)
        if operation == Operation.REMOVE_JUNCTION:
            return HookStages(self.pre_remove, self.post_remove, self.after_remove, label)
        raise ValueError(f"{operation} is not a junction operation")


HOOK_POINT_NAMES = frozenset(f.name for f in fields(EntityHooks)) | frozenset(
    f.name for f in fields(JunctionHooks)
)

_NO_ENTITY_HOOKS = EntityHooks()
_NO_JUNCTION_HOOKS = JunctionHooks()


@dataclass(frozen=True)
class HookSet:
    """
    All hooks of a process, keyed by entity and by (entity, relation).

    Constructed once at startup and read-only afterwards.
    """

    entities: Mapping[str, EntityHooks] = field(default_factory=dict)
    junctions: Mapping[tuple[str, str], JunctionHooks] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # frozen dataclass: bypass __setattr__
        object.__setattr__(self, "entities", MappingProxyType(dict(self.entities)))
        object.__setattr__(self, "junctions", MappingProxyType(dict(self.junctions)))

    @classmethod
    def build(
        cls,
        entities: Mapping[str, EntityHooks] | None = None,
        junctions: Mapping[tuple[str, str], JunctionHooks] | None = None,
    ) -> HookSet:
        return cls(entities=dict(entities or {}), junctions=dict(junctions or {}))

    def for_entity(self, entity_name: str, operation: Operation) -> HookStages:
        hooks = self.entities.get(entity_name, _NO_ENTITY_HOOKS)
        return hooks.stages(operation, f"{entity_name}.{operation.value}")

    def for_junction(self, entity_name: str, relation: str, operation: Operation) -> HookStages:
        hooks = self.junctions.get((entity_name, relation), _NO_JUNCTION_HOOKS)
        return hooks.stages(operation, f"{entity_name}.{relation}.{operation.value}")

    def validate_against(self, registry: Any) -> None:
        """
        Check that every keyed entity and relation exists.

        Raises:
            ValueError: If a hook targets an unknown entity or a non many-to-many relation
        """
        for name in self.entities:
            if not registry.has_entity(name):
                raise ValueError(f"Hooks registered for unknown entity '{name}'")
        for entity_name, relation_name in self.junctions:
            relation = registry.get_relation(entity_name, relation_name)
            if relation is None or not relation.spec.is_many_to_many:
                raise ValueError(
                    f"Junction hooks registered for {entity_name}.{relation_name}, "
                    "which is not a many-to-many relation"
                )
