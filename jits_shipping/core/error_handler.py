"""
Error handling and sanitization

- Typed shipping errors -> their own status code and machine-readable code
- Anything else -> logged with traceback, generic message returned to client
"""
import logging
import traceback
from typing import Union

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from jits_shipping.core.config import settings
from jits_shipping.core.exceptions import JitsBaseError, CarrierStateDivergenceError

logger = logging.getLogger(__name__)

# Patterns that indicate internal/sensitive error information
SENSITIVE_PATTERNS = [
    "password",
    "secret",
    "token",
    "apikey",
    "api_key",
    "bearer",
    "sqlalchemy",
    "asyncpg",
    "postgresql",
    "traceback",
    "file \"",
]


def is_sensitive_error(message: str) -> bool:
    """Check if error message contains sensitive information."""
    message_lower = message.lower()
    return any(pattern in message_lower for pattern in SENSITIVE_PATTERNS)


def sanitize_error_message(error: Union[str, Exception]) -> str:
    """Sanitize an error message for safe client exposure."""
    message = error if isinstance(error, str) else str(error)

    if settings.DEBUG:
        return message

    if is_sensitive_error(message):
        return "An internal error occurred. Please try again later."

    if len(message) > 200:
        return message[:200] + "..."

    return message


async def jits_error_handler(request: Request, exc: JitsBaseError) -> JSONResponse:
    if isinstance(exc, CarrierStateDivergenceError):
        # Operator-visible: carrier and store disagree
        logger.error(f"{request.method} {request.url.path} -> {exc.code}: {exc.to_dict()}")
    elif exc.http_status >= 500:
        logger.warning(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")

    return JSONResponse(
        status_code=exc.http_status,
        content={
            "error": {
                "code": exc.code,
                "message": sanitize_error_message(exc.message),
                "retryable": exc.retryable,
                "details": exc.details,
            }
        },
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    error_id = f"{request.client.host if request.client else 'unknown'}-{id(exc)}"
    logger.error(
        f"Unhandled exception [{error_id}]: {type(exc).__name__}: {exc}\n"
        f"Path: {request.url.path}\n"
        f"Method: {request.method}\n"
        f"Traceback:\n{''.join(traceback.format_exception(type(exc), exc, exc.__traceback__))}"
    )

    if settings.DEBUG:
        content = {"error": "internal_error", "message": str(exc), "type": type(exc).__name__, "error_id": error_id}
    else:
        content = {
            "error": "internal_error",
            "message": "An unexpected error occurred. Please try again later.",
            "error_id": error_id,
        }
    return JSONResponse(status_code=500, content=content)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(JitsBaseError, jits_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
