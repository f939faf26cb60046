"""
Route generator - exposes each entity domain as REST resources.

For every entity ``E`` with collection path ``/<plural>``:

    GET    /<plural>                      list (limit, offset, orderBy, orderDirection, include, where)
    POST   /<plural>                      create (nested children allowed)
    GET    /<plural>/{id}                 read (include)
    PUT    /<plural>/{id}                 partial update
    PATCH  /<plural>/{id}                 partial update
    DELETE /<plural>/{id}                 delete
    GET    /<plural>/{id}/<relation>      related entities
    POST   /<plural>/{id}/<relation>      add associations (many-to-many)
    PUT    /<plural>/{id}/<relation>      replace associations
    DELETE /<plural>/{id}/<relation>      remove associations (?ids=a,b)
    POST   /<plural>/{id}/<relation>/{ids}
    DELETE /<plural>/{id}/<relation>/{ids}

Every verb is registered on every path. Endpoints disabled by the entity's
``EndpointConfig`` (and verbs a path does not serve) answer 404, so callers
cannot tell a disabled endpoint from an unknown one.
"""

import json
from collections.abc import Callable
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from domain_engine.runtime.domain import EntityDomain
from domain_engine.runtime.engine import DomainEngine
from domain_engine.runtime.errors import ValidationError
from domain_engine.specs.registry import ResolvedRelation
from domain_engine.strings import to_api_plural

ContextFactory = Callable[[Request], Any]

ALL_METHODS = ("GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS")


# =============================================================================
# Request Helpers
# =============================================================================


async def _parse_request_body(request: Request) -> Any:
    """Decode the JSON body; an empty body is an empty object."""
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError("Request body must be valid JSON") from e


def _split_ids(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _ids_from_body(body: Any, relation: ResolvedRelation) -> list[Any]:
    """
    Related ids from a junction request body.

    Accepts ``{"ids": [...]}`` or ``{"<target>Ids": [...]}``, e.g.
    ``{"projectIds": [...]}`` for a relation targeting ``Project``.
    """
    if isinstance(body, list):
        return body
    if not isinstance(body, dict):
        raise ValidationError("Request body must be an object")
    target = relation.target.name
    keys = ("ids", f"{target[:1].lower()}{target[1:]}Ids", f"{relation.name}Ids")
    for key in keys:
        if key in body:
            ids = body[key]
            if not isinstance(ids, list):
                raise ValidationError(f"'{key}' must be a list of ids")
            return ids
    raise ValidationError(f"Request body must contain '{keys[0]}' or '{keys[1]}'")


def _relation_label(relation: ResolvedRelation) -> str:
    return relation.name[:1].upper() + relation.name[1:]


def _default_context(request: Request) -> dict[str, Any]:
    return {
        "method": request.method,
        "path": request.url.path,
        "request_id": request.headers.get("x-request-id"),
    }


# =============================================================================
# Handler Factories
# =============================================================================


def create_not_found_handler() -> Callable[..., Any]:
    """Handler for disabled endpoints and verbs a path does not serve."""

    async def handler(request: Request) -> Any:
        raise HTTPException(status_code=404, detail="Not found")

    return handler


def create_list_handler(domain: EntityDomain, context_factory: ContextFactory) -> Callable[..., Any]:
    """Create a handler for list operations."""

    async def handler(
        request: Request,
        limit: int | None = None,
        offset: int = 0,
        orderBy: str | None = None,
        orderDirection: str = "asc",
        include: str | None = None,
        where: str | None = None,
    ) -> Any:
        result = await domain.find_many(
            where=where,
            include=include,
            limit=limit,
            offset=offset,
            order_by=orderBy,
            order_direction=orderDirection,
            context=context_factory(request),
        )
        return result.to_envelope()

    return handler


def create_create_handler(
    domain: EntityDomain, context_factory: ContextFactory
) -> Callable[..., Any]:
    """Create a handler for create operations (with inline children when present)."""
    inline = {r.name for r in domain.inline_relations()}

    async def handler(request: Request) -> Any:
        body = await _parse_request_body(request)
        context = context_factory(request)
        if isinstance(body, dict) and inline.intersection(body):
            created = await domain.create_with_relations(body, context=context)
        else:
            created = await domain.create(body, context=context)
        return {"data": created}

    return handler


def create_read_handler(domain: EntityDomain, context_factory: ContextFactory) -> Callable[..., Any]:
    """Create a handler for read operations."""

    async def handler(request: Request, id: str, include: str | None = None) -> Any:
        found = await domain.find_by_id(id, include=include, context=context_factory(request))
        return {"data": found}

    return handler


def create_update_handler(
    domain: EntityDomain, context_factory: ContextFactory
) -> Callable[..., Any]:
    """Create a handler for update operations."""

    async def handler(request: Request, id: str) -> Any:
        body = await _parse_request_body(request)
        updated = await domain.update(id, body, context=context_factory(request))
        return {"data": updated}

    return handler


def create_delete_handler(
    domain: EntityDomain, context_factory: ContextFactory
) -> Callable[..., Any]:
    """Create a handler for delete operations."""

    async def handler(request: Request, id: str) -> Any:
        deleted = await domain.delete(id, context=context_factory(request))
        return {"data": deleted}

    return handler


def create_related_list_handler(domain: EntityDomain, relation: ResolvedRelation) -> Callable[..., Any]:
    async def handler(request: Request, id: str) -> Any:
        return {"data": await domain.list_related(id, relation.name)}

    return handler


def create_junction_handler(
    domain: EntityDomain,
    relation: ResolvedRelation,
    action: str,
    context_factory: ContextFactory,
    *,
    ids_in_path: bool = False,
) -> Callable[..., Any]:
    """
    Create a handler that adds, replaces or removes associations.

    Ids come from the ``{ids}`` path segment (comma separated) when
    ``ids_in_path`` is set, otherwise from ``?ids=`` or the JSON body.
    """
    label = _relation_label(relation)
    verb = {"add": "added", "replace": "updated", "remove": "removed"}[action]
    status_code = 201 if action == "add" else 200

    async def _run(request: Request, id: str, related_ids: list[Any]) -> Any:
        context = context_factory(request)
        if action == "add":
            count = await domain.add_associations(id, relation.name, related_ids, context=context)
        elif action == "replace":
            count = await domain.replace_associations(
                id, relation.name, related_ids, context=context
            )
        else:
            count = await domain.remove_associations(
                id, relation.name, related_ids, context=context
            )
        return JSONResponse(
            status_code=status_code,
            content=jsonable_encoder(
                {"data": {"message": f"{label} {verb} successfully", "count": count}}
            ),
        )

    if ids_in_path:

        async def path_handler(request: Request, id: str, ids: str) -> Any:
            related_ids = _split_ids(ids)
            if not related_ids:
                raise ValidationError("At least one id is required")
            return await _run(request, id, related_ids)

        return path_handler

    async def body_handler(request: Request, id: str) -> Any:
        query_ids = request.query_params.get("ids")
        if action == "remove" and query_ids is not None:
            related_ids: list[Any] = _split_ids(query_ids)
        else:
            related_ids = _ids_from_body(await _parse_request_body(request), relation)
        return await _run(request, id, related_ids)

    return body_handler


# =============================================================================
# Route Generator
# =============================================================================


class RouteGenerator:
    """
    Generates FastAPI routes for every entity of an engine.

    Routes are registered in a fixed order (static sub-resources before
    parameterized ones) so path matching never depends on entity order.
    """

    def __init__(self, engine: DomainEngine, context_factory: ContextFactory | None = None):
        """
        Initialize the route generator.

        Args:
            engine: Domain engine whose entities are exposed
            context_factory: Builds the hook context from the request
        """
        self.engine = engine
        self.context_factory = context_factory or _default_context
        self._router = APIRouter()

    def generate(self) -> APIRouter:
        """Generate the router with every entity's routes."""
        for domain in self.engine.domains.values():
            self._generate_entity_routes(domain)
        return self._router

    def _add_route(
        self,
        path: str,
        handlers: dict[str, Callable[..., Any] | None],
        tag: str,
    ) -> None:
        """
        Register every HTTP method on ``path``.

        HEAD follows GET. Methods missing from ``handlers`` (or mapped to
        ``None``) get the 404 handler, so a generated path never answers 405.
        """
        method_map = {
            "GET": self._router.get,
            "HEAD": self._router.head,
            "POST": self._router.post,
            "PUT": self._router.put,
            "PATCH": self._router.patch,
            "DELETE": self._router.delete,
            "OPTIONS": self._router.options,
        }
        handlers = {**handlers, "HEAD": handlers.get("GET")}
        for method in ALL_METHODS:
            handler = handlers.get(method)
            if handler is None:
                method_map[method](path, include_in_schema=False)(create_not_found_handler())
                continue
            status_code = 201 if method == "POST" else 200
            method_map[method](
                path, tags=[tag], status_code=status_code, include_in_schema=method != "HEAD"
            )(handler)

    def _generate_entity_routes(self, domain: EntityDomain) -> None:
        entity = domain.entity
        endpoints = entity.endpoints
        ctx = self.context_factory
        base = f"/{entity.plural or to_api_plural(entity.name)}"
        tag = entity.name

        self._add_route(
            base,
            {
                "GET": create_list_handler(domain, ctx) if endpoints.read_many else None,
                "POST": create_create_handler(domain, ctx) if endpoints.create else None,
            },
            tag,
        )

        relations = self.engine.registry.get_relations(entity.name)
        for relation in relations:
            self._generate_relation_routes(domain, relation, base, tag)

        update = create_update_handler(domain, ctx) if endpoints.update else None
        self._add_route(
            f"{base}/{{id}}",
            {
                "GET": create_read_handler(domain, ctx) if endpoints.read_one else None,
                "PUT": update,
                "PATCH": update,
                "DELETE": create_delete_handler(domain, ctx) if endpoints.delete else None,
            },
            tag,
        )

    def _generate_relation_routes(
        self, domain: EntityDomain, relation: ResolvedRelation, base: str, tag: str
    ) -> None:
        config = relation.spec.endpoints
        ctx = self.context_factory
        path = f"{base}/{{id}}/{relation.name}"

        handlers: dict[str, Callable[..., Any] | None] = {}
        if config.get:
            handlers["GET"] = create_related_list_handler(domain, relation)
        item_handlers: dict[str, Callable[..., Any] | None] = {}
        if relation.spec.is_many_to_many:
            if config.add:
                handlers["POST"] = create_junction_handler(domain, relation, "add", ctx)
                item_handlers["POST"] = create_junction_handler(
                    domain, relation, "add", ctx, ids_in_path=True
                )
            if config.replace:
                handlers["PUT"] = create_junction_handler(domain, relation, "replace", ctx)
            if config.remove:
                handlers["DELETE"] = create_junction_handler(domain, relation, "remove", ctx)
                item_handlers["DELETE"] = create_junction_handler(
                    domain, relation, "remove", ctx, ids_in_path=True
                )

        self._add_route(path, handlers, tag)
        self._add_route(f"{path}/{{ids}}", item_handlers, tag)


def generate_routes(engine: DomainEngine, context_factory: ContextFactory | None = None) -> APIRouter:
    """
    Convenience function to generate routes for an engine.

    Args:
        engine: Domain engine
        context_factory: Builds the hook context from each request

    Returns:
        FastAPI router with all entity routes
    """
    return RouteGenerator(engine, context_factory).generate()
