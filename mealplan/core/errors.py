"""Error taxonomy and FastAPI handlers."""

import enum
import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from mealplan.core.logging import LOGGER_NAME, get_request_id


class ErrorKind(str, enum.Enum):
    """Closed set of failure categories surfaced by the service."""

    CLIENT_INPUT = "client_input"
    NOT_FOUND = "not_found"
    AUTH = "auth"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    SIGNATURE_INVALID = "signature_invalid"
    TRANSIENT = "transient"
    PROVIDER = "provider"
    CORRELATION = "correlation"
    GENERATION_PARSE = "generation_parse"
    INTERNAL = "internal"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.TRANSIENT, ErrorKind.CORRELATION, ErrorKind.GENERATION_PARSE)


class AppError(Exception):
    code = "app_error"
    status_code = 500
    kind = ErrorKind.INTERNAL

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
    kind = ErrorKind.CLIENT_INPUT


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404
    kind = ErrorKind.NOT_FOUND


class AuthError(AppError):
    code = "unauthorized"
    status_code = 401
    kind = ErrorKind.AUTH


class SubscriptionRequiredError(AppError):
    """Raised when a paid feature is requested without an active subscription."""
    code = "subscription_required"
    status_code = 403
    kind = ErrorKind.FORBIDDEN


class ConflictError(AppError):
    code = "conflict"
    status_code = 409
    kind = ErrorKind.CONFLICT


class SignatureInvalidError(AppError):
    code = "signature_invalid"
    status_code = 400
    kind = ErrorKind.SIGNATURE_INVALID


class TransientProviderError(AppError):
    """Network failure or timeout talking to the billing or generation service."""
    code = "provider_unavailable"
    status_code = 503
    kind = ErrorKind.TRANSIENT


class StoreUnavailableError(TransientProviderError):
    code = "store_unavailable"


class ProviderError(AppError):
    """Permanent provider-side failure (invalid argument, rejected request)."""
    code = "provider_error"
    status_code = 502
    kind = ErrorKind.PROVIDER


class CorrelationError(AppError):
    """A billing event references a subscription or user with no matching profile."""
    code = "correlation_error"
    status_code = 400
    kind = ErrorKind.CORRELATION


class GenerationParseError(AppError):
    code = "generation_parse_failed"
    status_code = 502
    kind = ErrorKind.GENERATION_PARSE


def extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or extract_request_id(request)
    payload = error_payload(exc.code, exc.message, rid)
    logger = logging.getLogger(LOGGER_NAME)
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = extract_request_id(request)
    fields = [".".join(str(p) for p in err.get("loc", ()) if p != "body") for err in exc.errors()]
    message = "Invalid request body"
    if fields:
        message = f"Invalid or missing fields: {', '.join(f for f in fields if f)}"
    payload = error_payload(ValidationError.code, message, rid)
    logging.getLogger(LOGGER_NAME).warning(
        "request.invalid", extra={"request_id": rid, "error_code": ValidationError.code, "status": 400}
    )
    response = JSONResponse(status_code=400, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = error_payload(code, message, rid)
    logger = logging.getLogger(LOGGER_NAME)
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = extract_request_id(request)
    logger = logging.getLogger(LOGGER_NAME)
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
