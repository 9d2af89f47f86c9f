"""JSON error envelopes shared by the route modules."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


def error_response(message: str, status_code: int = 400, **extra: Any) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status_code)


def _format_validation_errors(errors) -> list:
    details = []
    for err in errors:
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        details.append({"field": ".".join(loc) or None, "message": err.get("msg", "Invalid value")})
    return details


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = _format_validation_errors(exc.errors())
    logger.info("[API] %s %s rejected: %s", request.method, request.url.path, details)
    return error_response("Validation failed", 400, details=details)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RequestValidationError, validation_error_handler)


def server_error(action: str, exc: Exception) -> JSONResponse:
    if isinstance(exc, SQLAlchemyError):
        logger.error("[API] %s failed (database): %s", action, exc)
        return error_response(f"Database error while trying to {action}", 500)
    logger.exception("[API] %s failed", action)
    return error_response(f"Failed to {action}", 500)
