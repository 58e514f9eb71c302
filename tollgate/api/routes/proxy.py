"""Metered proxy endpoints.

Endpoints:
- POST /chat/completions: authenticated, rate limited, usage metered
- POST /embeddings      : authenticated, rate limited, metered when usage is reported
- GET  /models          : authenticated only, never metered

Request and response bodies are provider-shaped JSON passed through
untouched, so no pydantic request models are declared here.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from tollgate.api.deps import get_context
from tollgate.context import ServiceContext
from tollgate.proxy.pipeline import run_pipeline

proxy_router = APIRouter()


@proxy_router.post("/chat/completions", operation_id="create_chat_completion")
async def chat_completions(
    request: Request, ctx: ServiceContext = Depends(get_context)
) -> Response:
    return await run_pipeline(ctx, request)


@proxy_router.post("/embeddings", operation_id="create_embedding")
async def embeddings(
    request: Request, ctx: ServiceContext = Depends(get_context)
) -> Response:
    return await run_pipeline(ctx, request)


@proxy_router.get("/models", operation_id="list_models")
async def models(
    request: Request, ctx: ServiceContext = Depends(get_context)
) -> Response:
    return await run_pipeline(ctx, request, rate_limited=False)
