"""Per-request orchestration of the metering pipeline.

    Received -> Authenticated -> Admitted -> Forwarded -> Metered -> Completed

Every stage failure is a TollgateError and short-circuits into the JSON error
envelope.  Metering is the exception: once the upstream has answered, its
response is returned to the caller no matter what happens while billing it.
A billing failure is logged and queued in the unbilled_usage outbox instead.

Rate-limit headers are attached to every response produced after admission,
including upstream error passthroughs.
"""

from __future__ import annotations

import enum
import logging
from typing import Any

from fastapi import Request, Response

from tollgate.billing.ledger import is_metered_endpoint, meter, record_unbilled, request_model
from tollgate.context import ServiceContext
from tollgate.errors import InternalError, PayloadTooLarge, TollgateError
from tollgate.proxy.forwarder import MAX_BODY_BYTES, UpstreamSuccess, forward
from tollgate.security.key_resolver import KeyContext, extract_credential, resolve_key
from tollgate.security.rate_limit import admit

logger = logging.getLogger(__name__)


class Stage(str, enum.Enum):
    RECEIVED = "received"
    AUTHENTICATED = "authenticated"
    ADMITTED = "admitted"
    FORWARDED = "forwarded"
    METERED = "metered"
    COMPLETED = "completed"


async def run_pipeline(ctx: ServiceContext, request: Request, *, rate_limited: bool = True) -> Response:
    """Authenticate, admit, forward and meter one inbound API request."""
    endpoint = request.url.path
    stage = Stage.RECEIVED
    rate_headers: dict[str, str] = {}

    try:
        body = await _read_body(request)

        key_context = await resolve_key(ctx, extract_credential(request.headers))
        stage = Stage.AUTHENTICATED

        if rate_limited:
            status = await admit(ctx, key_context.account_id, key_context.rate_limit_per_minute)
            rate_headers = status.headers()
        stage = Stage.ADMITTED

        upstream = await _forward(ctx, request, endpoint, body)
        stage = Stage.FORWARDED
    except TollgateError as exc:
        logger.info(
            "%s %s rejected after stage %s: %s (%d)",
            request.method,
            endpoint,
            stage.value,
            exc.error_type,
            exc.status_code,
        )
        return exc.to_response(headers=rate_headers or None)
    except Exception:
        logger.error("Unhandled error after stage %s for %s", stage.value, endpoint, exc_info=True)
        return InternalError().to_response(headers=rate_headers or None)

    if is_metered_endpoint(endpoint):
        await _meter_response(ctx, key_context, endpoint, request_model(body), upstream.json())
        stage = Stage.METERED

    stage = Stage.COMPLETED
    logger.debug("%s %s reached stage %s", request.method, endpoint, stage.value)
    return Response(
        content=upstream.body,
        status_code=upstream.status,
        media_type=upstream.content_type,
        headers=rate_headers,
    )


async def _read_body(request: Request) -> bytes:
    """Read the inbound body, refusing it once it passes MAX_BODY_BYTES.

    A declared Content-Length over the cap is rejected before any byte is
    read; chunked bodies are counted as they arrive.
    """
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > MAX_BODY_BYTES:
        raise PayloadTooLarge()

    chunks: list[bytes] = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > MAX_BODY_BYTES:
            raise PayloadTooLarge()
        chunks.append(chunk)
    return b"".join(chunks)


async def _forward(ctx: ServiceContext, request: Request, endpoint: str, body: bytes) -> UpstreamSuccess:
    try:
        return await forward(ctx, request.method, endpoint, body, request.url.query)
    except TollgateError:
        raise
    except Exception as exc:
        logger.error("Proxy error for %s %s", request.method, endpoint, exc_info=True)
        raise InternalError("Proxy request failed") from exc


async def _meter_response(
    ctx: ServiceContext,
    key_context: KeyContext,
    endpoint: str,
    model: str,
    payload: Any,
) -> None:
    try:
        await meter(ctx, key_context, endpoint, model, payload)
    except Exception as exc:
        reason = exc.message if isinstance(exc, TollgateError) else type(exc).__name__
        logger.error(
            "Billing error for account %s on %s (%s): response still returned",
            key_context.account_id,
            endpoint,
            reason,
            exc_info=not isinstance(exc, TollgateError),
        )
        await record_unbilled(ctx, key_context, endpoint, model, payload, reason)
