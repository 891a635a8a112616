"""
Application middleware — CORS and error-kind to HTTP status mapping.

Adapter and service errors carry a ``kind``; the handlers here turn
them into JSON responses so routes do not need per-endpoint try/except.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from platform_bridge.core.exceptions import (
    AuthenticationError,
    NetworkError,
    OAuthStateError,
    PlatformAPIError,
    PlatformBridgeError,
    RateLimitError,
    SignatureVerificationError,
    UnsupportedOperationError,
    ValidationError,
)

logger = logging.getLogger("middleware")

# Order matters: first matching class wins.
ERROR_STATUS_CODES = (
    (AuthenticationError, 401),
    (SignatureVerificationError, 401),
    (UnsupportedOperationError, 501),
    (ValidationError, 400),
    (OAuthStateError, 400),
    (RateLimitError, 429),
    (NetworkError, 504),
    (PlatformAPIError, 502),
)


def apply_cors(app: FastAPI) -> None:
    """Apply CORS middleware with permissive defaults."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def status_code_for(exc: PlatformBridgeError) -> int:
    for exc_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, exc_type):
            return status_code
    return 500


async def handle_platform_bridge_error(request: Request, exc: PlatformBridgeError) -> JSONResponse:
    status_code = status_code_for(exc)
    log = logger.warning if status_code < 500 else logger.error
    log("request failed path=%s kind=%s platform=%s detail=%s", request.url.path, exc.kind, exc.platform, exc)

    headers = {}
    if isinstance(exc, RateLimitError):
        headers["Retry-After"] = str(int(exc.retry_after))

    return JSONResponse(
        status_code=status_code,
        content={"error": exc.kind, "platform": exc.platform, "detail": str(exc)},
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PlatformBridgeError, handle_platform_bridge_error)
