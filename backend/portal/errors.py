"""
Exception handlers that give every API error the same JSON shape:

    {"error": <message>, "code": <code>, "details": {...}}
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .core.exceptions import DomainException

logger = logging.getLogger(__name__)


def _error_body(message: str, code: Optional[str] = None, details: Optional[Any] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"error": message}
    if code:
        body["code"] = code
    body["details"] = jsonable_encoder(details) if details is not None else {}
    return body


def _parse_detail(detail: Any) -> tuple[str, Optional[str], Optional[Any]]:
    if isinstance(detail, dict):
        code = detail.get("code") if isinstance(detail.get("code"), str) else None
        message = detail.get("message") or detail.get("error") or detail.get("detail")
        return (message if isinstance(message, str) else "Request failed"), code, detail.get("details")
    if isinstance(detail, str):
        return detail, None, None
    return "Request failed", None, detail


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(DomainException)
    async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
        return JSONResponse(
            _error_body(exc.message, exc.code, exc.details),
            status_code=exc.status_code,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        message, code, details = _parse_detail(exc.detail)
        return JSONResponse(
            _error_body(message, code, details),
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            _error_body("Request validation failed", "validation_error", {"errors": exc.errors()}),
            status_code=422,
        )

    @app.exception_handler(ValidationError)
    async def validation_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(
            _error_body("Validation failed", "validation_error", {"errors": exc.errors()}),
            status_code=422,
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
        return JSONResponse(
            _error_body("Internal server error", "internal_server_error"),
            status_code=500,
        )
