# This project was developed with assistance from AI tools.
"""FastAPI application entry point."""

import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from xpress_db import get_db_service

from .core.config import settings
from .core.exceptions import ApprovalValidationError
from .middleware.auth import MFA_CHALLENGE_HEADER, MFA_VERIFIED_HEADER
from .middleware.pii import FieldMaskingMiddleware
from .routes import access, approvals, audit, health
from .schemas.error import ErrorResponse
from .services.access import get_access_engine
from .services.policy_registry import get_policy_registry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Application startup/shutdown lifecycle."""
    # A malformed registry raises ConfigurationError here and aborts startup.
    get_policy_registry()
    engine = get_access_engine()
    engine.cache.start_sweeper()
    if settings.AUTH_DISABLED:
        logger.warning("AUTH_DISABLED is set: every request runs as the dev executive user")
    yield
    await engine.cache.stop_sweeper()
    if settings.AUDIT_BACKEND == "database":
        await get_db_service().dispose()


app = FastAPI(
    title="Xpress Ops Authorization API",
    description="Access decisions and approval workflows for the Xpress operations console",
    version="0.1.0",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_HOSTS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", MFA_VERIFIED_HEADER],
    expose_headers=[MFA_CHALLENGE_HEADER],
)

# Field masking -- runs after CORS, masks JSON response bodies per access decision
app.add_middleware(FieldMaskingMiddleware)

_HTTP_STATUS_TITLES: dict[int, str] = {
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    409: "Conflict",
    422: "Unprocessable Entity",
    500: "Internal Server Error",
    503: "Service Unavailable",
}


def _build_error(
    status_code: int, detail: str, request_id: str, errors: list[str] | None = None
) -> ErrorResponse:
    return ErrorResponse(
        title=_HTTP_STATUS_TITLES.get(status_code, "Error"),
        status=status_code,
        detail=detail,
        request_id=request_id,
        errors=errors or [],
    )


def _describe(error: dict) -> str:
    location = ".".join(str(part) for part in error.get("loc", ()))
    return f"{location}: {error.get('msg', '')}" if location else str(error.get("msg", ""))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Convert HTTPException to RFC 7807 Problem Details."""
    request_id = request.headers.get("x-request-id", str(uuid.uuid4()))
    body = _build_error(exc.status_code, str(exc.detail), request_id)
    return JSONResponse(
        status_code=exc.status_code,
        content=body.model_dump(),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Convert Pydantic validation errors to RFC 7807 Problem Details."""
    request_id = request.headers.get("x-request-id", str(uuid.uuid4()))
    errors = [_describe(e) for e in exc.errors()]
    body = _build_error(422, "Request validation failed", request_id, errors)
    return JSONResponse(status_code=422, content=body.model_dump())


@app.exception_handler(ApprovalValidationError)
async def approval_validation_handler(request: Request, exc: ApprovalValidationError):
    """Itemize approval request validation failures like body validation errors."""
    request_id = request.headers.get("x-request-id", str(uuid.uuid4()))
    body = _build_error(422, "Approval request validation failed", request_id, exc.errors)
    return JSONResponse(status_code=422, content=body.model_dump())


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Catch-all for unhandled exceptions -- log and return 500."""
    request_id = request.headers.get("x-request-id", str(uuid.uuid4()))
    logger.exception("Unhandled exception (request_id=%s)", request_id)
    body = _build_error(500, "An unexpected error occurred.", request_id)
    return JSONResponse(status_code=500, content=body.model_dump())


# Include routers
app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(access.router, prefix="/api/access", tags=["access"])
app.include_router(approvals.router, prefix="/api/approvals", tags=["approvals"])
app.include_router(audit.router, prefix="/api/audit", tags=["audit"])


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint"""
    return {"message": "Xpress Ops Authorization API"}
