"""Translation of domain error kinds into HTTP responses."""

from __future__ import annotations

import logging
from typing import TypeVar

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..domain.results import Err, ErrorKind, Result

logger = logging.getLogger(__name__)

T = TypeVar("T")

INTERNAL_ERROR_MESSAGE = "Internal error, try again."

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.DUPLICATE_ACCOUNT: status.HTTP_409_CONFLICT,
    ErrorKind.INVALID_TOKEN: status.HTTP_400_BAD_REQUEST,
    ErrorKind.TOKEN_EXPIRED: status.HTTP_400_BAD_REQUEST,
    ErrorKind.ALREADY_REDEEMED: status.HTTP_400_BAD_REQUEST,
    ErrorKind.ACCOUNT_NOT_ACTIVE: status.HTTP_403_FORBIDDEN,
    ErrorKind.INVALID_CREDENTIALS: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.ACCOUNT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
}


def error_response(status_code: int, kind: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"kind": kind, "message": message})


def http_error(err: Err) -> HTTPException:
    """Map a domain error onto its HTTP status with the stable kind/message body."""
    return error_response(STATUS_BY_KIND[err.kind], err.kind.value, err.message)


def unwrap(result: Result[T]) -> T:
    """Return the ``Ok`` value or raise the HTTP error matching the ``Err`` kind."""
    if isinstance(result, Err):
        logger.info("request failed with %s", result.kind.value)
        raise http_error(result)
    return result.value


async def _unhandled_exception(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": {"kind": "internal_error", "message": INTERNAL_ERROR_MESSAGE}},
    )


async def _invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Only the first message is returned; pydantic's error list echoes submitted values.
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request.") if errors else "Invalid request."
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    logger.info("rejected %s %s: %s", request.method, request.url.path, message)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": {"kind": "validation_error", "message": message}},
    )


def install_error_handlers(app: FastAPI) -> None:
    """Give request validation failures and unclassified exceptions the ``{kind, message}`` body."""
    app.add_exception_handler(RequestValidationError, _invalid_request)
    app.add_exception_handler(Exception, _unhandled_exception)
