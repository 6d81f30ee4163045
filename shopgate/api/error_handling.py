from __future__ import annotations

from typing import Iterable

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse, Response

from shopgate.api.schemas import Envelope, ErrorBody
from shopgate.config import Settings, get_settings
from shopgate.logging import get_logger
from shopgate.service.errors import AuthenticationError, ServiceError
from shopgate.service.gate import ACCESS_COOKIE
from shopgate.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

API_PREFIX = "/v1"

# request.state attribute holding an access credential minted by the gate
REFRESHED_ACCESS_STATE = "refreshed_access_token"

_STATUS_TO_CODE = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHENTICATED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "SERVER_ERROR",
    503: "SERVER_ERROR",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "SERVER_ERROR")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    """Build the error envelope response."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", message=message, error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def set_credential_cookie(
    response: Response, name: str, value: str, max_age: int, settings: Settings
) -> None:
    response.set_cookie(
        name,
        value,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="strict",
        max_age=max_age,
        path="/",
    )


def _carry_refreshed_access(
    request: Request, response: Response, cleared: Iterable[str]
) -> None:
    token = getattr(request.state, REFRESHED_ACCESS_STATE, None)
    if not token or ACCESS_COOKIE in cleared:
        return
    settings = get_settings()
    set_credential_cookie(
        response, ACCESS_COOKIE, token, settings.access_token_ttl_minutes * 60, settings
    )


def clear_credential_cookies(response: Response, names: Iterable[str]) -> None:
    for name in names:
        response.delete_cookie(name, path="/")


def is_page_route(request: Request) -> bool:
    return not request.url.path.startswith(API_PREFIX) and request.method == "GET"


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="CONFLICT")

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error(
            "store_unavailable",
            path=request.url.path,
            method=request.method,
            error=str(exc),
        )
        return _error_response(503, "service temporarily unavailable", code="SERVER_ERROR")

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
        response: Response
        if isinstance(exc, AuthenticationError) and is_page_route(request):
            response = RedirectResponse(get_settings().login_path, status_code=303)
        else:
            response = _error_response(
                exc.status_code, exc.message, exc.detail or None, code=exc.error_code
            )
        clear_credential_cookies(response, exc.clear_cookies)
        _carry_refreshed_access(request, response, exc.clear_cookies)
        response.headers.update(exc.headers)
        return response

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = [
            {
                "loc": [str(part) for part in err.get("loc", ())],
                "msg": err.get("msg", ""),
                "type": err.get("type", ""),
            }
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            errors=len(details),
        )
        message = details[0]["msg"] if details else "invalid request"
        return _error_response(422, message, details, code="VALIDATION_ERROR")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if isinstance(exc.detail, dict) and "error" in exc.detail:
            error_obj = exc.detail["error"]
            if isinstance(error_obj, dict):
                message = error_obj.get("message", "http error")
                code = error_obj.get("code")
                details = error_obj.get("details")
                if exc.status_code >= 500:
                    logger.error(
                        "http_error",
                        path=request.url.path,
                        method=request.method,
                        status_code=exc.status_code,
                        error_code=code,
                        message=message,
                    )
                elif exc.status_code >= 400:
                    logger.warning(
                        "http_client_error",
                        path=request.url.path,
                        method=request.method,
                        status_code=exc.status_code,
                        error_code=code,
                        message=message,
                    )
                response = _error_response(exc.status_code, message, details, code=code)
                if exc.headers:
                    response.headers.update(exc.headers)
                return response
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error_fallback",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        response = _error_response(exc.status_code, message)
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="SERVER_ERROR")
