"""Tollgate server package (ASGI app + lifespan)."""
