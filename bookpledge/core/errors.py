"""Error taxonomy and normalized HTTP error handlers."""

import logging
import builtins
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from bookpledge.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class AuthError(AppError):
    """Missing or invalid credential."""
    code = "unauthorized"
    status_code = 401


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class InvalidStateError(AppError):
    """Operation not allowed in the entity's current lifecycle state."""
    code = "invalid_state"
    status_code = 409


class AlreadyUsedForBookError(AppError):
    code = "already_used_for_book"
    status_code = 409


class CooldownActiveError(AppError):
    code = "cooldown_active"
    status_code = 409


class ConcurrencyConflictError(AppError):
    """Lost an optimistic race; the client may decide to retry."""
    code = "concurrent_conflict"
    status_code = 409


class ExternalTransientError(AppError):
    """Gateway or network hiccup, eligible for the scheduled retry pass."""
    code = "external_transient"
    status_code = 503


class ExternalPermanentError(AppError):
    """Explicit decline from an external provider. Recorded, not retried."""
    code = "external_declined"
    status_code = 402


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid)
    logger = logging.getLogger("bookpledge")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("bookpledge")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _extract_request_id(request)
    payload = _error_payload("validation_error", "Request body is invalid", rid)
    payload["errors"] = [
        {"loc": list(err.get("loc", [])), "msg": err.get("msg")} for err in exc.errors()
    ]
    response = JSONResponse(status_code=400, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    # Imported here: observability imports config/metrics and must not be a hard
    # dependency of the error types above.
    from bookpledge.core.observability import capture_exception

    rid = _extract_request_id(request)
    capture_exception(exc, {"request_id": rid, "path": request.url.path})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
