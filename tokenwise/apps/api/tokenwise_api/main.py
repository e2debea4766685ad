"""Tokenwise API - FastAPI Application Entry Point."""

import logging
import os
import time
import uuid
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tokenwise_api import __version__
from tokenwise_api.config.env import get_cors_allowed_origins
from tokenwise_api.context import ledger_op_var, request_id_var, user_id_var
from tokenwise_api.ledger.errors import LedgerError
from tokenwise_api.routers import admin, auth, health, subscription, tokens
from tokenwise_api.schemas import ProblemDetail
from tokenwise_api.utils import configure_json_logging

PROBLEM_BASE_URL = "https://api.tokenwise.app/problems"

# Machine-readable codes for plain HTTPExceptions
_STATUS_CODES = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    402: "INSUFFICIENT_TOKENS",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
}

logger = logging.getLogger(__name__)


def _instance() -> str:
    """Opaque occurrence id: urn:tokenwise:trace:{request_id}."""
    request_id = request_id_var.get()
    return f"urn:tokenwise:trace:{request_id}" if request_id else f"urn:tokenwise:trace:{uuid.uuid4()}"


def _problem_response(problem: ProblemDetail, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=problem.status,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers=headers,
    )


def _get_title_for_status(status_code: int) -> str:
    """Get human-readable title for HTTP status code."""
    titles = {
        400: "Bad Request",
        401: "Unauthorized",
        402: "Payment Required",
        403: "Forbidden",
        404: "Not Found",
        409: "Conflict",
        422: "Unprocessable Content",
        500: "Internal Server Error",
        503: "Service Unavailable",
    }
    return titles.get(status_code, f"HTTP {status_code}")


# ============================================================================
# Middlewares
# ============================================================================


async def http_completion_logging_middleware(request: Request, call_next):
    """Log every HTTP request completion ("http.request.completed").

    Fields: method, path, status_code, duration_ms and, for authenticated
    requests, user_id (read from request.state). request_id comes from
    context. Logged even when the handler raised (status 500).
    Per-request context vars are cleared before and after.
    """
    user_id_var.set("")
    ledger_op_var.set("")

    start_time = time.perf_counter()
    status_code = 500

    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000
        extra = {
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "duration_ms": round(duration_ms, 2),
        }
        user_id = getattr(request.state, "user_id", "")
        if user_id:
            extra["user_id"] = user_id
        logger.info("http.request.completed", extra=extra)
        user_id_var.set("")
        ledger_op_var.set("")


async def request_id_middleware(request: Request, call_next):
    """Accept or generate X-Request-ID and echo it on the response.

    Must be the outermost middleware so the context var is set before the
    inner middlewares run.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request_id_var.set(request_id)

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ============================================================================
# RFC 9457 Exception Handlers
# ============================================================================


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    """Domain errors (validation, insufficient tokens, missing subscription)."""
    problem = ProblemDetail(
        type=f"{PROBLEM_BASE_URL}/{exc.error_type}",
        title=exc.title,
        status=exc.status_code,
        detail=exc.detail,
        instance=_instance(),
        code=exc.code,
        **exc.extensions,
    )
    return _problem_response(problem)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """HTTP exceptions as application/problem+json.

    A detail that is already a problem body (auth and capability errors) is
    sent as-is; anything else is wrapped.
    """
    headers = dict(exc.headers) if exc.headers else None

    if isinstance(exc.detail, dict) and "type" in exc.detail and "status" in exc.detail:
        body: dict[str, Any] = dict(exc.detail)
        body.setdefault("instance", _instance())
        return JSONResponse(
            status_code=exc.status_code,
            content=body,
            media_type="application/problem+json",
            headers=headers,
        )

    title = _get_title_for_status(exc.status_code)
    problem = ProblemDetail(
        type=f"{PROBLEM_BASE_URL}/http-{exc.status_code}",
        title=title,
        status=exc.status_code,
        detail=exc.detail if exc.detail is not None else title,
        instance=_instance(),
        code=_STATUS_CODES.get(exc.status_code, "INTERNAL_ERROR" if exc.status_code >= 500 else "HTTP_ERROR"),
    )
    return _problem_response(problem, headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request body/query validation failures (422)."""
    errors = exc.errors()
    first_error = errors[0] if errors else {}
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    msg = first_error.get("msg", "Validation error")

    problem = ProblemDetail(
        type=f"{PROBLEM_BASE_URL}/validation-error",
        title="Request Validation Failed",
        status=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=f"Invalid field '{field}': {msg}",
        instance=_instance(),
        code="VALIDATION_ERROR",
    )
    return _problem_response(problem)


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything unhandled: logged with traceback, generic 500 to the client."""
    logger.error(
        "http.unhandled_exception",
        extra={"error_type": type(exc).__name__, "path": request.url.path},
        exc_info=True,
    )
    problem = ProblemDetail(
        type=f"{PROBLEM_BASE_URL}/internal-error",
        title="Internal Server Error",
        status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="An unexpected error occurred. Please try again later.",
        instance=_instance(),
        code="INTERNAL_ERROR",
    )
    return _problem_response(problem)


# ============================================================================
# Application Factory
# ============================================================================


def create_app() -> FastAPI:
    """Build the FastAPI application (routers, middlewares, error handlers)."""
    new_app = FastAPI(
        title="Tokenwise API",
        description="Token ledger and subscription plan transitions with RFC 9457 error handling.",
        version=__version__,
        docs_url="/api-docs",
        redoc_url="/redoc",
    )

    new_app.add_middleware(
        CORSMiddleware,
        allow_origins=get_cors_allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Admin-Token", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )

    # Registration order: the last one added is the outermost
    new_app.middleware("http")(http_completion_logging_middleware)
    new_app.middleware("http")(request_id_middleware)

    new_app.add_exception_handler(LedgerError, ledger_error_handler)
    new_app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    new_app.add_exception_handler(RequestValidationError, validation_exception_handler)
    new_app.add_exception_handler(Exception, general_exception_handler)

    new_app.include_router(health.router, tags=["health"])
    new_app.include_router(auth.router)
    new_app.include_router(tokens.router)
    new_app.include_router(subscription.router)
    new_app.include_router(admin.router)

    @new_app.get("/")
    def root() -> dict[str, str]:
        """Root endpoint."""
        return {
            "service": "Tokenwise API",
            "version": __version__,
            "status": "running",
        }

    return new_app


# Set TW_JSON_LOGS=false to disable (defaults to true for production)
if os.getenv("TW_JSON_LOGS", "true").lower() != "false":
    configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))

app = create_app()
