from __future__ import annotations

import traceback
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from hivelog.api.schemas import ErrorEnvelope
from hivelog.config import get_settings
from hivelog.logging import get_logger
from hivelog.service.errors import ServiceError
from hivelog.storage.errors import ConstraintViolation

logger = get_logger(__name__)

GENERIC_ERROR_MESSAGE = "Something went wrong!"

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _show_stack() -> bool:
    return not get_settings().is_production


def _error_response(
    status_code: int,
    message: str,
    data: Any = None,
    code: Optional[str] = None,
    exc: Optional[BaseException] = None,
) -> JSONResponse:
    envelope = ErrorEnvelope(
        message=message,
        data=jsonable_encoder(data) if data else None,
        code=code or _error_code_for_status(status_code),
    )
    if exc is not None and status_code >= 500 and _show_stack():
        envelope.stack = "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        )
    content = envelope.model_dump()
    if content["stack"] is None:
        content.pop("stack")
    return JSONResponse(status_code=status_code, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain, storage and framework errors onto the shared error envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _error_response(
            exc.status_code, exc.message, exc.detail, code=exc.error_code, exc=exc
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            error_count=len(errors),
        )
        return _error_response(400, "Invalid request.", errors, code="validation_error")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        return _error_response(exc.status_code, message, exc=exc)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, GENERIC_ERROR_MESSAGE, code="server_error", exc=exc)
