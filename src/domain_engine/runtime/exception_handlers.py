"""
Exception handlers for domain engine applications.

Every error response has the shape ``{"error": <message or list of messages>}``:

- DomainError subclasses use their own status code (400/404/409/500)
- Request validation errors (bad query parameter types) are 400
- HTTP exceptions (unknown paths, disabled endpoints) keep their status
- Anything else is logged and answered with a generic 500
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from domain_engine.runtime.errors import DomainError, messages_from_pydantic
from domain_engine.runtime.logging import log_with_context

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register the engine's exception handlers on a FastAPI application.

    Args:
        app: FastAPI application instance
    """

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
        if exc.status_code >= 500:
            log_with_context(
                logger,
                logging.ERROR,
                f"{request.method} {request.url.path} failed: {exc}",
                {"error_type": exc.error_type, "path": request.url.path},
            )
        return JSONResponse(status_code=exc.status_code, content={"error": exc.public_message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Convert query/path parameter validation errors to 400."""
        return JSONResponse(status_code=400, content={"error": messages_from_pydantic(exc)})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        log_with_context(
            logger,
            logging.ERROR,
            f"Unhandled error on {request.method} {request.url.path}",
            {"path": request.url.path},
            exc_info=exc,
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error"})
