"""FastAPI dependencies shared by the route modules."""

from __future__ import annotations

from fastapi import Request

from tollgate.context import ServiceContext


def get_context(request: Request) -> ServiceContext:
    """Return the ServiceContext installed on the app at startup."""
    return request.app.state.context
