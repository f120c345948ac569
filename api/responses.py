"""Response envelope and exception handlers."""
from typing import Any

import structlog
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from core.errors import CommerceError

logger = structlog.get_logger(__name__)


def success(data: Any, status_code: int = status.HTTP_200_OK, **extra: Any) -> JSONResponse:
    """Wrap data in ``{"success": true, "data": ...}``."""
    content = {"success": True, "data": data}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(content))


def failure(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"code": code, "message": message}},
    )


async def commerce_error_handler(request: Request, exc: CommerceError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "request_error",
        code=exc.code,
        status_code=exc.status_code,
        error=exc.message,
        path=request.url.path,
    )
    # 5xx messages are fixed per class, never the underlying error text
    message = exc.message if exc.status_code < 500 else type(exc).default_message
    return failure(exc.status_code, exc.code, message)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg', 'invalid')}" if location else "Invalid request"
    logger.info("request_validation_failed", path=request.url.path, errors=len(errors))
    return failure(status.HTTP_400_BAD_REQUEST, "VALIDATION_ERROR", message)


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled exceptions."""
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return failure(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "INTERNAL_ERROR",
        "An unexpected error occurred. Please try again later.",
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CommerceError, commerce_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)
