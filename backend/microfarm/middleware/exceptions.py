"""Error taxonomy and the FastAPI handlers that render it.

Services raise MicroFarmError subclasses.  Over HTTP every error, ours or
the framework's, leaves as the same envelope:

    {"error": {"code": "RESOURCE_NOT_FOUND", "message": "...", "details": {...}}}

Batch jobs catch the same classes per template / order / task and record
them in their run summary instead.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class MicroFarmError(Exception):
    """Base class; subclasses pick the HTTP status and error code."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class BusinessLogicError(MicroFarmError):
    """The request is well formed but the farm's rules forbid it."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_code = "BUSINESS_LOGIC_ERROR"


class ConfigurationError(BusinessLogicError):
    """Master data is missing or inconsistent (no recipe, no frequency, ...)."""

    error_code = "CONFIGURATION_ERROR"


class StageTransitionError(BusinessLogicError):
    """A manual crop stage change is not allowed from the current stage."""

    error_code = "INVALID_STAGE_TRANSITION"


class ResourceNotFoundError(MicroFarmError):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "RESOURCE_NOT_FOUND"

    def __init__(self, resource: str, identifier: str):
        super().__init__(f"{resource} not found: {identifier}")


def error_response(
    status_code: int,
    code: str,
    message: str,
    details: dict | None = None,
) -> JSONResponse:
    body = {"code": code, "message": message}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content={"error": body})


# ── Handlers ────────────────────────────────────────────────

async def handle_microfarm_error(request: Request, exc: MicroFarmError) -> JSONResponse:
    logger.warning("%s on %s %s: %s", exc.error_code, request.method, request.url.path, exc.message)
    return error_response(exc.status_code, exc.error_code, exc.message)


async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("HTTP %d on %s: %s", exc.status_code, request.url.path, exc.detail)
    return error_response(exc.status_code, f"HTTP_{exc.status_code}", str(exc.detail))


async def handle_validation_error(
    request: Request,
    exc: RequestValidationError | ValidationError,
) -> JSONResponse:
    logger.warning("Validation error on %s", request.url.path)
    errors = [
        {
            "field": ".".join(str(part) for part in err["loc"]),
            "message": err["msg"],
            "type": err["type"],
        }
        for err in exc.errors()
    ]
    return error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "VALIDATION_ERROR",
        "Request validation failed",
        details={"errors": errors},
    )


# (substring in the driver message, code, message); first match wins
_INTEGRITY_RULES = (
    ("unique", "DUPLICATE_RECORD", "A record with this value already exists"),
    ("foreign key", "FOREIGN_KEY_VIOLATION", "Referenced record does not exist"),
)


async def handle_integrity_error(request: Request, exc: IntegrityError) -> JSONResponse:
    logger.error("Integrity error on %s: %s", request.url.path, exc.orig)
    driver_message = str(exc.orig).lower()
    for needle, code, message in _INTEGRITY_RULES:
        if needle in driver_message:
            return error_response(status.HTTP_409_CONFLICT, code, message)
    return error_response(
        status.HTTP_409_CONFLICT, "INTEGRITY_ERROR", "Database constraint violation",
    )


async def handle_operational_error(request: Request, exc: OperationalError) -> JSONResponse:
    logger.error("Database unavailable on %s: %s", request.url.path, exc)
    return error_response(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "DATABASE_UNAVAILABLE",
        "Database temporarily unavailable. Please try again.",
    )


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "INTERNAL_SERVER_ERROR",
        "An unexpected error occurred. Please try again later.",
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(MicroFarmError, handle_microfarm_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(ValidationError, handle_validation_error)
    app.add_exception_handler(IntegrityError, handle_integrity_error)
    app.add_exception_handler(OperationalError, handle_operational_error)
    app.add_exception_handler(Exception, handle_unexpected_error)
