"""
Runtime server - builds a FastAPI application around a DomainEngine.

This is a thin adapter: all behavior lives in the engine. The app owns the
engine's lifecycle (schema creation on startup, after-hook draining on
shutdown) and maps domain errors to ``{"error": ...}`` responses.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from domain_engine._version import __version__
from domain_engine.runtime.engine import DomainEngine
from domain_engine.runtime.exception_handlers import register_exception_handlers
from domain_engine.runtime.logging import setup_logging
from domain_engine.runtime.route_generator import ContextFactory, generate_routes

logger = logging.getLogger(__name__)


def create_app(
    engine: DomainEngine,
    *,
    title: str = "Domain Engine",
    prefix: str = "",
    context_factory: ContextFactory | None = None,
) -> FastAPI:
    """
    Create a FastAPI application exposing every entity of ``engine``.

    Args:
        engine: Domain engine (tables are created on startup)
        title: OpenAPI title
        prefix: Path prefix for every entity route, e.g. "/api"
        context_factory: Builds the hook context from each request

    Returns:
        FastAPI application instance
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        engine.initialize()
        yield
        await engine.shutdown()

    app = FastAPI(title=title, version=__version__, lifespan=lifespan)
    register_exception_handlers(app)
    app.include_router(generate_routes(engine, context_factory), prefix=prefix)
    app.state.engine = engine
    return app


def run_app(
    engine: DomainEngine,
    host: str = "127.0.0.1",
    port: int = 8000,
    prefix: str = "",
) -> None:
    """
    Serve an engine with uvicorn.

    Example:
        >>> engine = DomainEngine(registry, config=EngineConfig.from_env())
        >>> run_app(engine, port=8080)
    """
    import uvicorn

    setup_logging(engine.config)
    app = create_app(engine, prefix=prefix)
    logger.info("Serving %d entities on http://%s:%d%s", len(engine.domains), host, port, prefix)
    uvicorn.run(app, host=host, port=port, log_config=None)
