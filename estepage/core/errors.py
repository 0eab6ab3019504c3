"""Error normalization and handlers."""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from estepage.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.details = details


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class QuotaExceededError(AppError):
    """A numeric plan quota would be exceeded; details carry current_count/limit/tier."""
    code = "quota_exceeded"
    status_code = 403


class FeatureNotAvailableError(AppError):
    """The tenant's plan tier does not include the requested feature."""
    code = "feature_not_available"
    status_code = 403


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


logger = logging.getLogger("estepage")


def _request_id_for(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or uuid4().hex


def _envelope(code: str, message: str, request_id: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message, "request_id": request_id}
    if details:
        error["details"] = details
    # FastAPI-compatible top-level "detail"
    return {"error": error, "detail": message}


def _respond(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    exc_info: bool = False,
) -> JSONResponse:
    rid = _request_id_for(request)
    level = logging.ERROR if status_code >= 500 else logging.WARNING
    logger.log(
        level,
        "http.error",
        exc_info=exc_info,
        extra={"request_id": rid, "error_code": code, "status": status_code, "path": request.url.path},
    )
    response = JSONResponse(status_code=status_code, content=_envelope(code, message, rid, details))
    response.headers["x-request-id"] = rid
    return response


async def app_error_handler(request: Request, exc: AppError):
    if exc.request_id:
        request.state.request_id = exc.request_id
    return _respond(request, exc.status_code, exc.code, exc.message, exc.details)


async def http_error_handler(request: Request, exc: HTTPException):
    code = {401: "unauthorized", 403: "forbidden", 404: "not_found"}.get(exc.status_code, "http_error")
    return _respond(request, exc.status_code, code, str(exc.detail or "HTTP error"))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
    return _respond(request, 422, "validation_error", "Request validation failed", {"fields": fields})


async def unhandled_exception_handler(request: Request, exc: Exception):
    return _respond(request, 500, "internal_error", "Unexpected error", exc_info=True)
