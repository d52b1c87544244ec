from __future__ import annotations

import logging
from typing import Any, Protocol

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from miniapp_notify.observability import log_event


class ProviderErrorLike(Protocol):
    @property
    def category(self) -> str: ...

    @property
    def retryable(self) -> bool: ...


_DEFAULT_ERROR_CODES = {
    status.HTTP_400_BAD_REQUEST: "bad_request",
    status.HTTP_401_UNAUTHORIZED: "unauthorized",
    status.HTTP_403_FORBIDDEN: "forbidden",
    status.HTTP_404_NOT_FOUND: "not_found",
    status.HTTP_405_METHOD_NOT_ALLOWED: "method_not_allowed",
}


def api_error(
    status_code: int,
    error: str,
    *,
    message: str | None = None,
    details: Any = None,
) -> HTTPException:
    detail: dict[str, Any] = {"ok": False, "error": error}
    if message is not None:
        detail["message"] = message
    if details is not None:
        detail["details"] = details
    return HTTPException(status_code=status_code, detail=detail)


def provider_error_detail(*, provider: str, operation: str, exc: ProviderErrorLike) -> dict[str, Any]:
    return {
        "type": "provider_error",
        "provider": provider,
        "operation": operation,
        "category": exc.category,
        "retryable": exc.retryable,
        "message": str(exc),
    }


async def _http_exception_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict):
        content = exc.detail
    else:
        content = {
            "ok": False,
            "error": _DEFAULT_ERROR_CODES.get(exc.status_code, "error"),
            "message": str(exc.detail),
        }
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


async def _validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"ok": False, "error": "bad_request", "details": [err.get("msg") for err in exc.errors()]},
    )


async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    log_event(
        "unhandled_exception",
        level=logging.ERROR,
        request_id=getattr(request.state, "request_id", None),
        method=request.method,
        path=request.url.path,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"ok": False, "error": "internal", "message": "An internal server error occurred."},
    )


def install_error_handlers(app) -> None:
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)
