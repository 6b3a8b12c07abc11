"""
Global Error Handlers

Maps OutboxError subclasses to HTTP responses with a stable error body:

    {"error": {"code": "CONCURRENCY_CONFLICT", "message": "...", "trace_id": "..."}}
"""

import logging
import traceback
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..errors import ErrorCode, OutboxError
from ..observability import get_trace_id

logger = logging.getLogger(__name__)


def error_body(
    code: str,
    message: str,
    trace_id: str,
    details: Optional[List[Dict[str, Any]]] = None
) -> Dict[str, Any]:
    body = {"code": code, "message": message, "trace_id": trace_id}
    if details:
        body["details"] = details
    return {"error": body}


def register_error_handlers(app: FastAPI):
    """
    Register all error handlers on the FastAPI app.

    - OutboxError (domain errors, status from the error code)
    - RequestValidationError (FastAPI validation)
    - Generic Exception (catch-all for unexpected errors)
    """

    @app.exception_handler(OutboxError)
    async def outbox_error_handler(request: Request, exc: OutboxError):
        trace_id = get_trace_id() or str(uuid4())

        logger.warning(
            f"API Error: {exc.code.value} - {exc.message}",
            extra={"error_code": exc.code.value, "path": request.url.path}
        )

        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.code.value, exc.message, trace_id)
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        trace_id = get_trace_id() or str(uuid4())

        details = [
            {
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "code": error["type"],
            }
            for error in exc.errors()
        ]

        logger.warning(
            f"Validation Error: {len(details)} field(s)",
            extra={"path": request.url.path}
        )

        return JSONResponse(
            status_code=400,
            content=error_body("VALIDATION_ERROR", "Request validation failed", trace_id, details)
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        trace_id = get_trace_id() or str(uuid4())

        logger.error(
            f"Unhandled Exception: {type(exc).__name__}: {exc}",
            extra={"path": request.url.path, "traceback": traceback.format_exc()}
        )

        # Don't expose internal details
        return JSONResponse(
            status_code=500,
            content=error_body(ErrorCode.INTERNAL_ERROR.value, "An internal error occurred", trace_id)
        )
