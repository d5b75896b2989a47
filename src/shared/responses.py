"""Uniform API response envelope and error mapping."""

from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from protean.exceptions import (
    ExpectedVersionError,
    InvalidOperationError,
    InvalidStateError,
    ObjectNotFoundError,
    ProteanException,
    TransactionError,
)
from protean.exceptions import ValidationError as ProteanValidationError
from pydantic import BaseModel

from shared.exceptions import StorefrontError
from shared.logging import get_logger

logger = get_logger(__name__)

# Framework errors raised by repositories and aggregates, most specific first
_PROTEAN_ERRORS: tuple[tuple[type[ProteanException], int, str], ...] = (
    (ProteanValidationError, 400, "VALIDATION_ERROR"),
    (ObjectNotFoundError, 404, "NOT_FOUND"),
    (ExpectedVersionError, 409, "CONCURRENT_MODIFICATION"),
    (InvalidStateError, 409, "INVALID_STATE"),
    (InvalidOperationError, 409, "INVALID_OPERATION"),
    (TransactionError, 500, "TRANSACTION_FAILED"),
)


class ApiResponse(BaseModel):
    success: bool
    data: Any = None
    message: str | None = None
    error: str | None = None
    code: str | None = None
    errors: dict[str, list[str]] | None = None


def ok(data: Any = None, message: str | None = None) -> dict[str, Any]:
    return ApiResponse(success=True, data=data, message=message).model_dump(exclude_none=True)


def fail(error: StorefrontError) -> dict[str, Any]:
    return ApiResponse(
        success=False,
        error=error.message,
        code=error.code,
        errors=error.messages or None,
    ).model_dump(exclude_none=True)


def describe(exc: ProteanException) -> tuple[int, dict[str, Any]]:
    """Status code and response body for any storefront or framework error."""
    if isinstance(exc, StorefrontError):
        return exc.status_code, fail(exc)

    status_code, code = 500, "INTERNAL_ERROR"
    for error_cls, mapped_status, mapped_code in _PROTEAN_ERRORS:
        if isinstance(exc, error_cls):
            status_code, code = mapped_status, mapped_code
            break

    messages = getattr(exc, "messages", None)
    errors = messages if isinstance(messages, dict) else None
    message = str(exc.args[0]) if exc.args else str(exc)
    body = ApiResponse(success=False, error=message or code, code=code, errors=errors)
    return status_code, body.model_dump(exclude_none=True)


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ProteanException)
    async def _domain_error(request: Request, exc: ProteanException) -> JSONResponse:
        status_code, body = describe(exc)
        if status_code >= 500:
            logger.error("request_failed", path=request.url.path, code=body.get("code"), error=body.get("error"))
        else:
            logger.info("request_rejected", path=request.url.path, code=body.get("code"), error=body.get("error"))
        return JSONResponse(status_code=status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors: dict[str, list[str]] = {}
        for problem in exc.errors():
            field = ".".join(str(part) for part in problem.get("loc", ()) if part != "body") or "body"
            errors.setdefault(field, []).append(problem.get("msg", "Invalid value"))
        body = ApiResponse(success=False, error="Validation failed", code="VALIDATION_ERROR", errors=errors)
        return JSONResponse(status_code=400, content=body.model_dump(exclude_none=True))
