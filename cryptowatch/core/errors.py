"""Error taxonomy and FastAPI exception handlers.

Every error response has the same shape:
    {"error": {"code", "message", "request_id"}, "detail": message}
and echoes the request id in the x-request-id header.
"""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from cryptowatch.core.logging import LOGGER_NAME, get_request_id


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


class PlanNotFoundError(ValidationError):
    code = "invalid_plan"


class InvalidSignatureError(AppError):
    """Webhook body could not be authenticated against the gateway secret."""
    code = "invalid_signature"
    status_code = 400


class UnauthorizedError(AppError):
    code = "unauthorized"
    status_code = 401


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class CryptoPaymentsDisabledError(NotFoundError):
    code = "crypto_payments_disabled"

    def __init__(self, message: str = "Crypto payments are not enabled", **kwargs):
        super().__init__(message, **kwargs)


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class NoActiveSubscriptionError(ConflictError):
    code = "no_active_subscription"

    def __init__(self, message: str = "No active subscription", **kwargs):
        super().__init__(message, **kwargs)


class UpstreamUnavailableError(AppError):
    """A gateway or chain RPC could not be reached; safe for the client to retry."""
    code = "upstream_unavailable"
    status_code = 503


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


def _json_error(status_code: int, code: str, message: str, rid: str) -> JSONResponse:
    response = JSONResponse(status_code=status_code, content=_error_payload(code, message, rid))
    response.headers["x-request-id"] = rid
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    logger = logging.getLogger(LOGGER_NAME)
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return _json_error(exc.status_code, exc.code, exc.message, rid)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    logging.getLogger(LOGGER_NAME).warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return _json_error(exc.status_code, code, message, rid)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _extract_request_id(request)
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{field}: {first.get('msg', 'invalid request')}" if field else "Invalid request"
    logging.getLogger(LOGGER_NAME).warning("request.invalid", extra={"request_id": rid, "error_code": "validation_error"})
    return _json_error(400, "validation_error", message, rid)


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logging.getLogger(LOGGER_NAME).error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    return _json_error(500, "internal_error", "Unexpected error", rid)
