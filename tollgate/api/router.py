"""Top-level FastAPI APIRouter for the Tollgate proxy API (v1).

Prefix:  /v1
Tags:    ["proxy"]

Sub-routers included:
- proxy_router : POST /v1/chat/completions, POST /v1/embeddings, GET /v1/models

The /health probe is registered separately (no prefix, no auth).
"""

from __future__ import annotations

from fastapi import APIRouter

from tollgate.api.routes.proxy import proxy_router

api_router = APIRouter(prefix="/v1", tags=["proxy"])

api_router.include_router(proxy_router)
