"""Exception handlers mapping errors onto the ``{success, message, data}`` envelope."""

import logging

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth.exceptions import AuthException, RateLimited

logger = logging.getLogger(__name__)


def create_error_response(
    status_code: int,
    message: str,
    data: dict | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Create a standardized error response."""
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, "data": data},
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Unknown routes, wrong methods and other framework-level HTTP errors."""
    return create_error_response(exc.status_code, str(exc.detail), headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies (missing keys, wrong JSON types).

    Field formats are checked by the services and surface as 400s instead.
    """
    fields = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part != "body"]
        fields.append({
            "field": ".".join(location) or "body",
            "message": error.get("msg", "").removeprefix("Value error, "),
        })

    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        message="Malformed request",
        data={"error_code": "VALIDATION_ERROR", "fields": fields},
    )


async def auth_exception_handler(request: Request, exc: AuthException) -> JSONResponse:
    """Core auth errors keep their status code and stable ``error_code``."""
    headers = None
    if isinstance(exc, RateLimited) and exc.retry_after is not None:
        headers = {"Retry-After": str(max(1, exc.retry_after))}
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.error_code, request.url.path, exc.message)
    return create_error_response(
        exc.status_code,
        exc.message,
        {"error_code": exc.error_code, **exc.data},
        headers=headers,
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything unexpected is logged in full and answered without detail."""
    logger.exception(
        "Unhandled exception on %s %s",
        request.method,
        request.url.path,
    )
    return create_error_response(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        message="Internal server error",
    )
