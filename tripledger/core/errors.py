"""Ledger error taxonomy and the HTTP error envelope.

The same exception classes are raised by the data access layer, translated to
JSON by the handlers below, and re-raised on the client side by the httpx
backend so callers see one vocabulary end to end.
"""

from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from starlette import status
import logging

logger = logging.getLogger("tripledger.errors")


class LedgerError(Exception):
    """Base class for every failure the ledger reports to its callers."""

    code = "ledger_error"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "", *, detail=None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.detail = detail if detail is not None else self.message


class NotFound(LedgerError):
    """Target does not exist or belongs to another user."""

    code = "not_found"
    http_status = status.HTTP_404_NOT_FOUND


class ValidationFailed(LedgerError):
    code = "validation_error"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class NotAuthenticated(LedgerError):
    code = "not_authenticated"
    http_status = status.HTTP_401_UNAUTHORIZED


class TransientUnavailable(LedgerError):
    """The atomic path (or the backend) could not be reached."""

    code = "service_unavailable"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE


class OperationFailed(LedgerError):
    """Terminal failure after the fallback path was exhausted."""

    code = "operation_failed"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR


def ledger_error_handler(request: Request, exc: LedgerError):  # type: ignore
    if exc.http_status >= 500:
        logger.error("ledger error on %s %s: %s", request.method, request.url.path, exc)
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, NotAuthenticated) else None
    return JSONResponse(
        status_code=exc.http_status,
        content={"error": exc.code, "detail": jsonable_encoder(exc.detail)},
        headers=headers,
    )


def http_error_handler(request: Request, exc):  # type: ignore
    if exc.status_code == status.HTTP_404_NOT_FOUND:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={
                "error": "no_route",
                "detail": f"No route for {request.method} {request.url.path}",
            },
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": "http_error", "detail": exc.detail},
    )


def validation_error_handler(request: Request, exc: RequestValidationError):  # type: ignore
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "validation_error",
            "detail": jsonable_encoder(exc.errors()),
        },
    )


def server_error_handler(request: Request, exc: Exception):  # type: ignore
    logger.exception("unhandled exception")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_error",
            "detail": "An unexpected error occurred.",
        },
    )


ERROR_CLASSES = {
    cls.code: cls
    for cls in (NotFound, ValidationFailed, NotAuthenticated, TransientUnavailable, OperationFailed)
}
