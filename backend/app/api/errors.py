"""
CallSync - API Error Handling

Maps the CallSyncError hierarchy onto HTTP responses.

Response shapes:
    429: {"error", "limit", "remaining", "reset", "retryAfter"} plus
         X-RateLimit-* and Retry-After headers
    other: {"error", "code", "details"}

Outside debug mode, server-side (5xx) failures are reported with a generic
per-operation message. Client errors always keep their message.
"""

import logging
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.core.exceptions import AdmissionDeniedError, CallSyncError, ValidationError
from app.core.logging import correlation_id_var

logger = logging.getLogger(__name__)


FALLBACK_MESSAGES = {
    "create_call": "Failed to create call. Please check your input and try again.",
    "get_call": "Failed to retrieve call information. Please try again later.",
    "list_calls": "Failed to retrieve call information. Please try again later.",
    "stop_call": "Failed to stop call. Please try again.",
    "analyze_call": "Failed to analyze call. Please try again later.",
    "get_transcript": "Failed to retrieve call transcript. Please try again later.",
    "get_recording": "Failed to retrieve call recording. Please try again later.",
}
GENERIC_SERVER_ERROR = "An unexpected error occurred. Please try again later."
INVALID_REQUEST = "Invalid request format. Please check your input."

REQUEST_ID_HEADER = "X-Request-ID"


def _operation(request: Request) -> str:
    endpoint = request.scope.get("endpoint")
    return getattr(endpoint, "__name__", "unknown")


def _client_message(request: Request, exc: CallSyncError) -> str:
    if exc.status_code < 500 or request.app.state.settings.app_debug:
        return exc.message
    return FALLBACK_MESSAGES.get(_operation(request), GENERIC_SERVER_ERROR)


async def admission_denied_handler(request: Request, exc: AdmissionDeniedError) -> JSONResponse:
    decision = exc.decision
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, **decision.to_dict()},
        headers=decision.headers(),
    )


async def callsync_error_handler(request: Request, exc: CallSyncError) -> JSONResponse:
    operation = _operation(request)
    if exc.status_code >= 500:
        logger.error("[%s] %s: %s", operation, exc.code, exc.message)
    else:
        logger.info("[%s] %s: %s", operation, exc.code, exc.message)

    details = exc.details if exc.status_code < 500 or request.app.state.settings.app_debug else {}
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": _client_message(request, exc), "code": exc.code, "details": details},
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", "")}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"error": INVALID_REQUEST, "code": ValidationError.code, "details": {"errors": errors}},
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("[%s] Unhandled error", _operation(request))
    return JSONResponse(
        status_code=500,
        content={
            "error": FALLBACK_MESSAGES.get(_operation(request), GENERIC_SERVER_ERROR),
            "code": CallSyncError.code,
            "details": {},
        },
    )


async def correlation_id_middleware(request: Request, call_next):
    """Assign a correlation id per request and echo it back."""
    correlation_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex[:16]
    token = correlation_id_var.set(correlation_id)
    try:
        response = await call_next(request)
    finally:
        correlation_id_var.reset(token)
    response.headers[REQUEST_ID_HEADER] = correlation_id
    return response


def register_error_handling(app: FastAPI) -> None:
    """Install exception handlers and the correlation id middleware."""
    app.add_exception_handler(AdmissionDeniedError, admission_denied_handler)
    app.add_exception_handler(CallSyncError, callsync_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    app.middleware("http")(correlation_id_middleware)
