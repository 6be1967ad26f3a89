"""Problem+json rendering for every error leaving the API."""

from http import HTTPStatus
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .core.exceptions import DomainException

logger = logging.getLogger(__name__)

PROBLEM_MEDIA_TYPE = "application/problem+json"
PROBLEM_TYPE_BASE = "https://consultcore.dev/problems/"


def _title(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Error"


def _problem(
    *,
    status: int,
    instance: str,
    detail: Optional[str] = None,
    code: Optional[str] = None,
    errors: Optional[Any] = None,
) -> Dict[str, Any]:
    problem: Dict[str, Any] = {
        "type": f"{PROBLEM_TYPE_BASE}{code.lower()}" if code else "about:blank",
        "title": _title(status),
        "status": status,
        "detail": detail or "",
        "instance": instance,
    }
    if code:
        problem["code"] = code
    if errors:
        problem["errors"] = jsonable_encoder(errors)
    return problem


def _split_detail(detail: Any) -> tuple[Optional[str], Optional[str], Optional[Any]]:
    """DomainException.to_http_exception() packs message, code and details into a dict."""
    if isinstance(detail, dict):
        code = detail.get("code") if isinstance(detail.get("code"), str) else None
        message = detail.get("message") or detail.get("detail")
        return (
            message if isinstance(message, str) else None,
            code,
            detail.get("details") or detail.get("errors"),
        )
    if detail is None:
        return None, None, None
    return str(detail), None, None


def _respond(problem: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(
        problem, status_code=problem["status"], media_type=PROBLEM_MEDIA_TYPE, headers=headers
    )


def register_error_handlers(app: FastAPI) -> None:
    def _http_problem(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        detail, code, errors = _split_detail(exc.detail)
        problem = _problem(
            status=exc.status_code,
            instance=request.url.path,
            detail=detail,
            code=code,
            errors=errors,
        )
        return _respond(problem, getattr(exc, "headers", None))

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return _http_problem(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def starlette_http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        return _http_problem(request, exc)

    @app.exception_handler(DomainException)
    async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
        # routes convert with handle_domain_exception; this catches anything that slipped past
        return _http_problem(request, exc.to_http_exception())

    def _validation_problem(request: Request, errors: Any, detail: str) -> JSONResponse:
        problem = _problem(
            status=422,
            instance=request.url.path,
            detail=detail,
            code="validation_error",
            errors=errors,
        )
        return _respond(problem)

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return _validation_problem(request, exc.errors(), "Request validation failed")

    @app.exception_handler(ValidationError)
    async def validation_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return _validation_problem(request, exc.errors(), "Validation failed")

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s", request.url.path)
        return _respond(
            _problem(
                status=500,
                instance=request.url.path,
                detail="Internal Server Error",
                code="internal_server_error",
            )
        )
