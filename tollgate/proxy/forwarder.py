"""Transparent relay of inbound API requests to the upstream provider.

The forwarder passes method, path, query string and raw body through
unchanged and injects the upstream credential when one is configured.  It
does no business logic on the payload.

Outcome classification:
- 2xx                              -> ``UpstreamSuccess``
- any other status                 -> ``UpstreamError`` with the same status
- transport failure (refused, DNS,
  timeout, reset)                  -> ``UpstreamUnavailable`` (never retried)

Responses are read incrementally and abandoned past ``MAX_BODY_BYTES`` so a
misbehaving upstream cannot make the proxy buffer an unbounded body.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from tollgate.context import ServiceContext
from tollgate.errors import UpstreamError, UpstreamUnavailable

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 10 * 1024 * 1024
USER_AGENT = "Tollgate-Proxy/1.0"


@dataclass(frozen=True)
class UpstreamSuccess:
    """A successful upstream response, body kept as raw bytes."""

    body: bytes
    status: int
    content_type: str = "application/json"

    def json(self) -> Any | None:
        """Decode the body as JSON, or return None if it is not JSON."""
        try:
            return json.loads(self.body)
        except (ValueError, UnicodeDecodeError):
            return None


def build_upstream_headers(upstream_api_key: str) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
    }
    if upstream_api_key:
        headers["Authorization"] = f"Bearer {upstream_api_key}"
    return headers


def build_target_url(base_url: str, path: str, query: str = "") -> str:
    url = f"{base_url.rstrip('/')}{path}"
    if query:
        url = f"{url}?{query}"
    return url


async def forward(
    ctx: ServiceContext,
    method: str,
    path: str,
    body: bytes = b"",
    query: str = "",
) -> UpstreamSuccess:
    """Relay one request upstream and classify the outcome.

    Raises:
        UpstreamError:       Upstream answered with a non-2xx status, or its
                             body exceeded ``MAX_BODY_BYTES``.
        UpstreamUnavailable: The network call itself failed.
    """
    url = build_target_url(ctx.settings.upstream_base_url, path, query)
    logger.info("Proxying %s %s to upstream", method, path)

    request = ctx.http.build_request(
        method,
        url,
        headers=build_upstream_headers(ctx.settings.upstream_api_key),
        content=body if method.upper() != "GET" and body else None,
    )

    try:
        response = await ctx.http.send(request, stream=True)
    except httpx.TransportError as exc:
        logger.error("Upstream unavailable for %s %s: %s", method, path, exc)
        raise UpstreamUnavailable() from exc

    try:
        content = await _read_capped(response)
    except httpx.TransportError as exc:
        logger.error("Upstream connection lost reading %s %s: %s", method, path, exc)
        raise UpstreamUnavailable() from exc
    finally:
        await response.aclose()

    if not response.is_success:
        logger.error(
            "Upstream API error (%d): %s",
            response.status_code,
            content[:2048].decode("utf-8", errors="replace"),
        )
        raise UpstreamError(
            response.status_code, f"Upstream API error: {response.reason_phrase}"
        )

    return UpstreamSuccess(
        body=content,
        status=response.status_code,
        content_type=response.headers.get("content-type", "application/json"),
    )


async def _read_capped(response: httpx.Response) -> bytes:
    chunks: list[bytes] = []
    size = 0
    async for chunk in response.aiter_bytes():
        size += len(chunk)
        if size > MAX_BODY_BYTES:
            logger.error("Upstream response exceeded %d bytes, discarding", MAX_BODY_BYTES)
            raise UpstreamError(502, "Upstream response too large")
        chunks.append(chunk)
    return b"".join(chunks)
