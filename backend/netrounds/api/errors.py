"""Global error handlers ensuring code and request_id are included in JSON responses."""

from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from netrounds.domain.rounds.errors import RoundsError
from netrounds.infra.store import TransientStoreError
from netrounds.obs.logging import current_request_id

ERROR_CODE_HEADER = "X-Error-Code"
RETRY_AFTER_SECONDS = 5

DomainError = (RoundsError, TransientStoreError)


def get_request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None) or current_request_id()


def as_http_error(exc: Exception) -> HTTPException:
    """Translate a domain error into an HTTPException carrying its code."""
    headers = {ERROR_CODE_HEADER: getattr(exc, "code", "error")}
    if isinstance(exc, TransientStoreError):
        headers["Retry-After"] = str(RETRY_AFTER_SECONDS)
    return HTTPException(status_code=exc.status_code, detail=exc.detail, headers=headers)


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
        headers = dict(exc.headers or {})
        code = headers.pop(ERROR_CODE_HEADER, None) or (exc.detail if isinstance(exc.detail, str) else "error")
        payload = {"detail": exc.detail, "code": code, "request_id": get_request_id(request)}
        return JSONResponse(status_code=exc.status_code, content=payload, headers=headers or None)

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        payload = {
            "detail": "validation_error",
            "code": "validation_error",
            "errors": jsonable_errors(exc),
            "request_id": get_request_id(request),
        }
        return JSONResponse(status_code=422, content=payload)

    # errors raised outside a router's own translation (dependencies, lifespan jobs)
    @app.exception_handler(RoundsError)
    async def rounds_exc_handler(request: Request, exc: RoundsError):  # type: ignore[override]
        return await http_exc_handler(request, as_http_error(exc))

    @app.exception_handler(TransientStoreError)
    async def store_exc_handler(request: Request, exc: TransientStoreError):  # type: ignore[override]
        return await http_exc_handler(request, as_http_error(exc))


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    errors = []
    for item in exc.errors():
        errors.append({"loc": list(item.get("loc", ())), "msg": item.get("msg"), "type": item.get("type")})
    return errors


__all__ = ["DomainError", "as_http_error", "get_request_id", "install_error_handlers"]
