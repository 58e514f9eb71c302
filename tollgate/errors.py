"""Error taxonomy for the request-metering pipeline.

Every stage failure is raised as a :class:`TollgateError` subclass and turned
into the OpenAI-style envelope ``{"error": {"message", "type"}}`` by the
pipeline orchestrator or the app-level exception handler.  Nothing here ever
carries internal exception text to the caller.
"""

from __future__ import annotations

from fastapi.responses import JSONResponse


class TollgateError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 500
    error_type: str = "server_error"
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> dict:
        return {"error": {"message": self.message, "type": self.error_type}}

    def to_response(self, headers: dict[str, str] | None = None) -> JSONResponse:
        return JSONResponse(
            self.to_payload(), status_code=self.status_code, headers=headers
        )


class Unauthenticated(TollgateError):
    status_code = 401
    error_type = "invalid_request_error"
    default_message = "API key required"


class InvalidCredential(TollgateError):
    status_code = 401
    error_type = "invalid_request_error"
    default_message = "Invalid API key"


class InsufficientBalance(TollgateError):
    status_code = 429
    error_type = "insufficient_quota"
    default_message = "Insufficient balance"


class RateLimitExceeded(TollgateError):
    status_code = 429
    error_type = "rate_limit_exceeded"

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(
            f"Rate limit exceeded. Maximum {limit} requests per minute."
        )


class PayloadTooLarge(TollgateError):
    status_code = 413
    error_type = "invalid_request_error"
    default_message = "Request body too large"


class UpstreamUnavailable(TollgateError):
    status_code = 502
    error_type = "service_unavailable"
    default_message = "Upstream service unavailable"


class UpstreamError(TollgateError):
    """Non-success status from the upstream; the status is passed through."""

    error_type = "upstream_error"

    def __init__(self, status_code: int, message: str | None = None) -> None:
        self.status_code = status_code
        super().__init__(message or f"Upstream API error: {status_code}")


class InternalError(TollgateError):
    status_code = 500
    error_type = "server_error"
