from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from kinship.apps.api.response import error_response
from kinship.core.errors import (
    ConflictError,
    InvariantViolation,
    KinshipError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "PERMISSION_DENIED",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Domain errors map onto HTTP statuses; the error's own code is kept in the envelope.
_DOMAIN_STATUS: tuple[tuple[type[KinshipError], int], ...] = (
    (ValidationError, 422),
    (NotFoundError, 404),
    (ConflictError, 409),
    (PermissionDeniedError, 403),
    (InvariantViolation, 500),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def status_for_error(exc: KinshipError) -> int:
    for error_type, status_code in _DOMAIN_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _error_details(exc: KinshipError) -> dict[str, Any] | None:
    if isinstance(exc, ConflictError):
        details = {
            "current_status": exc.current_status,
            "reference_count": exc.reference_count,
        }
        return {k: v for k, v in details.items() if v is not None} or None
    if isinstance(exc, PermissionDeniedError):
        return {"reason": exc.reason}
    return None


async def kinship_error_handler(request: Request, exc: KinshipError) -> JSONResponse:
    status_code = status_for_error(exc)
    if status_code >= 500:
        # Invariant failures are bugs; keep the message out of the response.
        logger.error("invariant_violation path=%s message=%s", request.url.path, exc.message)
        payload = error_response(request=request, code=exc.code, message="Internal consistency error")
    else:
        payload = error_response(
            request=request,
            code=exc.code,
            message=exc.message,
            details=_error_details(exc),
        )
    return JSONResponse(content=payload, status_code=status_code)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Also receives fastapi.HTTPException, which subclasses the Starlette one.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces to clients.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(KinshipError, kinship_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_exception_handler)
