from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .core.exceptions import DomainException


def _code_from_status(status_code: int) -> str:
    mapping = {
        400: "VALIDATION_ERROR",
        401: "UNAUTHORIZED",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        409: "CONFLICT",
        422: "BUSINESS_RULE_VIOLATION",
        500: "INTERNAL_SERVER_ERROR",
    }
    return mapping.get(status_code, "ERROR")


def _error_body(
    *, status: int, message: Optional[str], code: Optional[str], details: Optional[Any]
) -> Dict[str, Any]:
    return {
        "error": code or _code_from_status(status),
        "message": message or "",
        "details": details if details is not None else {},
    }


def _parse_detail(detail: Any) -> tuple[Optional[str], Optional[str], Optional[Any]]:
    if isinstance(detail, dict):
        code = detail.get("code") if isinstance(detail.get("code"), str) else None
        message = detail.get("message") or detail.get("detail")
        detail_text = message if isinstance(message, str) else None
        errors = detail.get("details") or detail.get("errors")
        return detail_text, code, errors
    if isinstance(detail, str):
        return detail, None, None
    if detail is None:
        return None, None, None
    return str(detail), None, None


def register_error_handlers(app: FastAPI) -> None:
    """Render every error as ``{"error", "message", "details"}``."""

    @app.exception_handler(DomainException)
    async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
        body = _error_body(
            status=exc.status_code,
            message=exc.message,
            code=exc.code,
            details=jsonable_encoder(exc.details),
        )
        return JSONResponse(body, status_code=exc.status_code)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        message, code, details = _parse_detail(exc.detail)
        body = _error_body(
            status=exc.status_code,
            message=message,
            code=code,
            details=jsonable_encoder(details) if details is not None else None,
        )
        return JSONResponse(body, status_code=exc.status_code, headers=exc.headers)

    @app.exception_handler(StarletteHTTPException)
    async def starlette_http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        message, code, details = _parse_detail(exc.detail)
        body = _error_body(
            status=exc.status_code,
            message=message,
            code=code,
            details=jsonable_encoder(details) if details is not None else None,
        )
        return JSONResponse(body, status_code=exc.status_code, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        # Malformed input is a validation failure like any other: 400
        body = _error_body(
            status=400,
            message="Request validation failed",
            code="VALIDATION_ERROR",
            details={"errors": jsonable_encoder(exc.errors())},
        )
        return JSONResponse(body, status_code=400)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        body = _error_body(
            status=500,
            message="Internal Server Error",
            code="INTERNAL_SERVER_ERROR",
            details=None,
        )
        return JSONResponse(body, status_code=500)
