"""Tollgate HTTP server entry point.

Lifespan opens the ServiceContext (database engine, Redis client, upstream
HTTP client) at startup and closes it at shutdown, so every request shares
one connection pool per dependency.

Entry point:
    uvicorn tollgate.server.main:app --host 0.0.0.0 --port 3001

Or run directly (listens on TOLLGATE_PORT):
    python -m tollgate.server.main
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute

from tollgate.api.router import api_router
from tollgate.api.routes.health import health_router
from tollgate.config import Settings, settings
from tollgate.context import ServiceContext, open_context
from tollgate.errors import TollgateError

logger = logging.getLogger(__name__)


def custom_generate_unique_id(route: APIRoute) -> str:
    """Generate deterministic, SDK-friendly operation IDs for REST routes."""
    if route.tags:
        return f"{route.tags[0]}-{route.name}"
    return route.name


async def tollgate_error_handler(request: Request, exc: TollgateError) -> JSONResponse:
    return exc.to_response()


def create_app(
    app_settings: Settings | None = None,
    context: ServiceContext | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        app_settings: Settings used to open the service context at startup.
        context:      A pre-built context.  When given, the lifespan neither
                      opens nor closes anything (tests own its lifecycle).
    """
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if context is not None:
            yield
            return

        logger.info("Tollgate starting up...")
        async with open_context(app_settings) as ctx:
            app.state.context = ctx
            logger.info(
                "Tollgate ready: API at /v1, health at /health (upstream=%s)",
                app_settings.upstream_base_url,
            )
            yield
        logger.info("Tollgate shut down.")

    app = FastAPI(
        title="Tollgate",
        description="Metering proxy for OpenAI-compatible completion APIs",
        version="0.1.0",
        lifespan=lifespan,
        generate_unique_id_function=custom_generate_unique_id,
    )
    if context is not None:
        app.state.context = context

    app.add_exception_handler(TollgateError, tollgate_error_handler)
    app.include_router(health_router)
    app.include_router(api_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
