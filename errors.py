from __future__ import annotations

import re
from typing import Any

import structlog
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = structlog.get_logger()

UNAVAILABLE_MESSAGE = "Service temporarily unavailable. Please try again later."

_ERROR_CODE_RE = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)*$")


class ReconciliationError(Exception):
    """Base typed error for the reconciliation service.

    - `code` is stable and dot-separated, for programmatic handling.
    - `message` is what the caller sees.
    - `context` is for server-side logs only and is never serialized.
    """

    def __init__(
        self,
        *,
        code: str,
        message: str,
        status_code: int = 500,
        context: dict[str, Any] | None = None,
    ) -> None:
        if not _ERROR_CODE_RE.fullmatch(code):
            raise ValueError(f"Invalid error code, expected dot-separated lowercase tokens: {code!r}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = int(status_code)
        self.context = dict(context or {})

    def to_public_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class InvariantViolationError(ReconciliationError):
    """The record graph is in a state reconciliation must never produce.

    The detail goes to `context`; callers only get the opaque message.
    """

    def __init__(self, detail: str, *, context: dict[str, Any] | None = None):
        merged = {"detail": detail, **(context or {})}
        super().__init__(
            code="internal.invariant_violation",
            message=UNAVAILABLE_MESSAGE,
            status_code=500,
            context=merged,
        )


class StoreUnavailableError(ReconciliationError):
    """Transient store failure (lock timeout, I/O error). Safe to retry."""

    def __init__(self, detail: str, *, context: dict[str, Any] | None = None):
        merged = {"detail": detail, **(context or {})}
        super().__init__(
            code="store.unavailable",
            message=UNAVAILABLE_MESSAGE,
            status_code=503,
            context=merged,
        )


def _describe_validation_errors(exc: RequestValidationError) -> str:
    messages = []
    for error in exc.errors():
        message = str(error.get("msg", "Invalid request"))
        # pydantic prefixes messages raised from validators
        message = message.removeprefix("Value error, ")
        location = [str(part) for part in error.get("loc", ()) if part != "body"]
        if location and error.get("type") != "value_error":
            message = f"{'.'.join(location)}: {message}"
        messages.append(message)
    return "; ".join(messages) or "Invalid request"


def register_exception_handlers(app: FastAPI) -> None:
    """Register the service's exception handlers on a FastAPI app."""

    @app.exception_handler(ReconciliationError)
    async def _reconciliation_error_handler(request: Request, exc: ReconciliationError) -> Response:
        logger.error("Reconciliation request failed", path=request.url.path, code=exc.code, **exc.context)
        return JSONResponse(status_code=exc.status_code, content=exc.to_public_dict())

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
        detail = _describe_validation_errors(exc)
        logger.warning("Rejected request", path=request.url.path, code="request.validation_error", reason=detail)
        return JSONResponse(
            status_code=400,
            content={"detail": detail, "code": "request.validation_error"},
        )

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception) -> Response:
        logger.exception("Unhandled exception", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=500,
            content={"detail": UNAVAILABLE_MESSAGE, "code": "internal.unhandled"},
        )
