"""Global exception handlers: map domain errors to HTTP responses.

Routes contain only the happy path.  Core services raise
:class:`~funnel_core.errors.FunnelError` subclasses, each carrying a stable
code and status; the handlers here render them as::

    {"error": {"code": "...", "message": "...", "details": {...}}}

Anything unexpected is logged with its traceback and returned as a generic
``INTERNAL_ERROR`` with no internal detail.
"""

import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from funnel_core.errors import FunnelError

logger = logging.getLogger(__name__)


def error_body(code: str, message: str, details: dict | None = None) -> dict:
    return {"error": {"code": code, "message": message, "details": details or {}}}


async def funnel_error_handler(request: Request, exc: FunnelError) -> JSONResponse:
    """Render a domain error with its own status code."""
    if exc.status_code >= 500:
        logger.error("%s at %s: %s", exc.code, request.url.path, exc.message)
    else:
        logger.info(
            "%s [%d] at %s: %s", exc.code, exc.status_code, request.url.path, exc.message
        )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed body, path or header values → 400 VALIDATION_ERROR."""
    errors = [
        {
            "loc": [str(part) for part in err.get("loc", ())],
            "msg": err.get("msg", ""),
            "type": err.get("type", ""),
        }
        for err in exc.errors()
    ]
    logger.info("Request validation failed at %s: %s", request.url.path, errors)
    return JSONResponse(
        status_code=400,
        content=error_body("VALIDATION_ERROR", "Invalid request", {"errors": errors}),
    )


async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unhandled exceptions: log full traceback, return 500."""
    logger.exception("Unhandled exception at %s", request.url.path)
    return JSONResponse(
        status_code=500,
        content=error_body("INTERNAL_ERROR", "Internal server error"),
    )
