from __future__ import annotations

import logging
from enum import Enum

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    INVALID_REQUEST = "invalid_request"
    NOT_FOUND = "not_found"
    INTERNAL = "internal"


STATUS_BY_KIND = {
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INTERNAL: 500,
}


class SheetError(Exception):
    """A failure in the sheet API, tagged with the kind that picks its HTTP status."""

    def __init__(self, kind: ErrorKind, message: str, details: str | None = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]

    def envelope(self) -> dict:
        payload = {"error": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class RecordNotFound(LookupError):
    pass


def describe_exception(exc: BaseException) -> str:
    message = str(exc).strip()
    return message or exc.__class__.__name__


def unauthenticated() -> SheetError:
    return SheetError(ErrorKind.UNAUTHENTICATED, "Authentication required")


def invalid_request(message: str, details: str | None = None) -> SheetError:
    return SheetError(ErrorKind.INVALID_REQUEST, message, details)


def not_found(message: str) -> SheetError:
    return SheetError(ErrorKind.NOT_FOUND, message)


def internal_error(message: str, exc: BaseException) -> SheetError:
    return SheetError(ErrorKind.INTERNAL, message, describe_exception(exc))


def store_error(message: str, exc: Exception) -> SheetError:
    if isinstance(exc, SheetError):
        return exc
    if isinstance(exc, RecordNotFound):
        return not_found(describe_exception(exc))
    if isinstance(exc, ValueError):
        return invalid_request(describe_exception(exc))
    logger.exception("%s: %s", message, exc)
    return internal_error(message, exc)


def error_response(error: SheetError) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content=error.envelope())


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(SheetError)
    async def _sheet_error_handler(request: Request, exc: SheetError):
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError):
        details = "; ".join(
            f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', '')}" for err in exc.errors()
        )
        return error_response(invalid_request("Invalid request", details or None))

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception: %s", exc)
        return error_response(internal_error("Internal error", exc))
