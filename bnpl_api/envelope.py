"""
Response envelope and exception -> HTTP status mapping.

Success:  ``{"success": true, "data": ...}``
Failure:  ``{"success": false, "error": "...", "code": "...", "retryable": bool}``

Business declines keep their specific code (AFFORDABILITY_DECLINED,
NO_ELIGIBLE_LENDER) and never surface as 500.  Gateway and concurrency
failures are 503 with ``retryable: true``; anything unexpected is a generic
retryable INTERNAL_ERROR without internal detail.
"""

from __future__ import annotations

from dataclasses import asdict, is_dataclass
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from bnpl_kernel.exceptions import (
    AffordabilityDeclinedError,
    AuthorizationTokenError,
    BnplError,
    ConcurrencyError,
    DecisionError,
    ExternalGatewayError,
    IdempotencyError,
    ImmutabilityViolationError,
    LifecycleError,
    NotFoundError,
    ValidationError,
)
from bnpl_kernel.logging_config import get_logger
from bnpl_kernel.utils.hashing import to_jsonable

logger = get_logger("api.errors")

# Most specific first
_STATUS_BY_CATEGORY: tuple[tuple[type[BnplError], int], ...] = (
    (AuthorizationTokenError, 401),
    (ValidationError, 400),
    (NotFoundError, 404),
    (LifecycleError, 409),
    (IdempotencyError, 409),
    (ImmutabilityViolationError, 409),
    (DecisionError, 422),
    (ExternalGatewayError, 503),
    (ConcurrencyError, 503),
)


def ok(data: Any) -> dict[str, Any]:
    if is_dataclass(data) and not isinstance(data, type):
        data = asdict(data)
    return {"success": True, "data": to_jsonable(data)}


def status_for(exc: BnplError) -> int:
    for category, status in _STATUS_BY_CATEGORY:
        if isinstance(exc, category):
            return status
    return 500


def error_body(exc: BnplError) -> dict[str, Any]:
    body: dict[str, Any] = {
        "success": False,
        "error": str(exc),
        "code": exc.code,
        "retryable": exc.is_retryable,
    }
    if isinstance(exc, AffordabilityDeclinedError):
        body["declineCode"] = exc.decline_code
        body["reasoning"] = exc.reasoning
        body["confidenceScore"] = exc.confidence_score
        body["approvedAmount"] = exc.approved_amount
    if isinstance(exc, ValidationError) and exc.field:
        body["field"] = exc.field
    return body


def install_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(BnplError)
    async def _bnpl_error(request: Request, exc: BnplError) -> JSONResponse:
        status = status_for(exc)
        log = logger.error if status >= 500 else logger.info
        log("request_failed", extra={
            "path": request.url.path, "code": exc.code, "status": status,
        })
        return JSONResponse(status_code=status, content=error_body(exc))

    @app.exception_handler(RequestValidationError)
    async def _request_invalid(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={
            "success": False,
            "error": "Request validation failed",
            "code": ValidationError.code,
            "retryable": False,
            "details": jsonable_encoder(exc.errors()),
        })

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("request_crashed", extra={"path": request.url.path})
        return JSONResponse(status_code=500, content={
            "success": False,
            "error": "Internal error, please retry",
            "code": "INTERNAL_ERROR",
            "retryable": True,
        })
