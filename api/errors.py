"""Custom exceptions and FastAPI error handler registration."""
from __future__ import annotations

import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .jobs.runner import JobNotFoundError, JobNotRunningError
from .schemas.envelope import ApiResponse

logger = logging.getLogger(__name__)


# ── Custom Exceptions ────────────────────────────────────────────────


class InvalidRequestError(Exception):
    """Submission payload is missing required fields."""


# ── Error → HTTP mapping ────────────────────────────────────────────

_EXCEPTION_STATUS = {
    InvalidRequestError: 400,
    JobNotRunningError: 400,
    JobNotFoundError: 404,
}


def _make_handler(status_code: int):
    """Create a handler that wraps an exception in ApiResponse."""

    async def _handler(request: Request, exc: Exception) -> JSONResponse:
        resp = ApiResponse.fail(str(exc))
        return JSONResponse(status_code=status_code, content=resp.model_dump())

    return _handler


def _describe_validation(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "Invalid request: " + "; ".join(parts)


def register_error_handlers(app: FastAPI) -> None:
    """Register custom exception handlers on the FastAPI app."""
    for exc_cls, status in _EXCEPTION_STATUS.items():
        app.add_exception_handler(exc_cls, _make_handler(status))

    @app.exception_handler(RequestValidationError)
    async def _invalid(request: Request, exc: RequestValidationError) -> JSONResponse:
        resp = ApiResponse.fail(_describe_validation(exc))
        return JSONResponse(status_code=400, content=resp.model_dump())

    @app.exception_handler(StarletteHTTPException)
    async def _http(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        resp = ApiResponse.fail(str(exc.detail))
        return JSONResponse(status_code=exc.status_code, content=resp.model_dump(), headers=exc.headers)

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error: %s\n%s", exc, traceback.format_exc())
        resp = ApiResponse.fail("Internal server error")
        return JSONResponse(status_code=500, content=resp.model_dump())
