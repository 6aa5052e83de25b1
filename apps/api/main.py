"""
Clinflow API - FastAPI application entry point.
"""
from __future__ import annotations

import logging
import os
import sys
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.trustedhost import TrustedHostMiddleware

from apps.api.authz import hipaa_enforcement_enabled
from packages.db.database import DATABASE_URL, init_db, ping_db
from packages.shared.errors import DomainError, NotFoundError, StorageKeyError
from packages.shared.storage import ensure_dirs

API_VERSION = "0.1.0"


def _parse_csv_env(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return [value.strip() for value in raw.split(",") if value.strip()]


def _parse_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("clinflow.api")

app = FastAPI(
    title="Clinflow API",
    description="Clinical encounter, lab and document workflow",
    version=API_VERSION,
)

# Security/runtime settings
cors_allow_origins = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
)
cors_allow_credentials = _parse_bool_env("CORS_ALLOW_CREDENTIALS", True)
audit_logging_enabled = _parse_bool_env("HIPAA_AUDIT_LOGGING", True)
max_request_bytes = int(os.getenv("MAX_REQUEST_BYTES", str(5 * 1024 * 1024)))
allowed_hosts = _parse_csv_env("ALLOWED_HOSTS", ["*"])
security_headers_enabled = _parse_bool_env("SECURITY_HEADERS_ENABLED", True)


def _validate_hipaa_runtime() -> None:
    """Fail fast on unsafe defaults when HIPAA enforcement is enabled."""
    if not hipaa_enforcement_enabled():
        return

    if DATABASE_URL.startswith("sqlite"):
        raise RuntimeError(
            "HIPAA_ENFORCEMENT=true requires a managed database. "
            "Set DATABASE_URL to Postgres (sqlite is not allowed)."
        )

    if "*" in cors_allow_origins:
        raise RuntimeError(
            "HIPAA_ENFORCEMENT=true does not allow wildcard CORS origins."
        )

    if "*" in allowed_hosts:
        raise RuntimeError(
            "HIPAA_ENFORCEMENT=true does not allow wildcard ALLOWED_HOSTS."
        )

    auth_mode = os.getenv("API_INTERNAL_AUTH_MODE", "jwt").strip().lower()
    if auth_mode not in {"jwt", "static", "either"}:
        raise RuntimeError("API_INTERNAL_AUTH_MODE must be one of: jwt, static, either.")
    if auth_mode in {"jwt", "either"}:
        jwt_secret = os.getenv("API_INTERNAL_JWT_SECRET", "").strip()
        if len(jwt_secret) < 32:
            raise RuntimeError(
                "HIPAA_ENFORCEMENT=true with JWT auth requires API_INTERNAL_JWT_SECRET >= 32 chars."
            )
    if auth_mode in {"static", "either"}:
        internal_token = os.getenv("API_INTERNAL_TOKEN", "").strip()
        if len(internal_token) < 24:
            raise RuntimeError(
                "HIPAA_ENFORCEMENT=true with static auth requires API_INTERNAL_TOKEN >= 24 chars."
            )


app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_allow_origins,
    allow_credentials=cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=[
        "Authorization",
        "Content-Type",
        "X-User-Id",
        "X-Tenant-Id",
        "X-Internal-Token",
        "X-Internal-Auth",
        "X-Idempotency-Key",
        "X-Correlation-Id",
    ],
    expose_headers=["X-Correlation-Id"],
)
app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts)


def _error(status_code: int, body: dict, request: Request | None = None) -> JSONResponse:
    headers = {}
    correlation_id = getattr(request.state, "correlation_id", None) if request is not None else None
    if correlation_id:
        headers["X-Correlation-Id"] = correlation_id
    return JSONResponse(status_code=status_code, content={"error": body}, headers=headers)


@app.middleware("http")
async def request_security_and_audit_middleware(request: Request, call_next):
    started = time.perf_counter()
    correlation_id = (
        request.headers.get("X-Correlation-Id")
        or request.headers.get("X-Request-Id")
        or uuid.uuid4().hex
    )
    request.state.correlation_id = correlation_id
    user_id = request.headers.get("X-User-Id", "anonymous")
    tenant_id = request.headers.get("X-Tenant-Id", "unknown")

    response = None
    if request.url.path != "/health":
        content_length = request.headers.get("Content-Length")
        if content_length:
            try:
                if int(content_length) > max_request_bytes:
                    response = _error(
                        413,
                        {"type": "payload_too_large", "message": "Request entity too large"},
                    )
            except ValueError:
                pass

    if response is None:
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "Unhandled error correlation_id=%s method=%s path=%s",
                correlation_id,
                request.method,
                request.url.path,
            )
            response = _error(
                500,
                {
                    "type": "unexpected_error",
                    "message": "An unexpected error occurred.",
                    "correlationId": correlation_id,
                },
            )

    response.headers["X-Correlation-Id"] = correlation_id

    if security_headers_enabled:
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault(
            "Permissions-Policy",
            "camera=(), microphone=(), geolocation=()",
        )
        response.headers.setdefault(
            "Strict-Transport-Security",
            "max-age=31536000; includeSubDomains",
        )

    if audit_logging_enabled:
        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "request_audit correlation_id=%s method=%s path=%s status=%s duration_ms=%s user_id=%s tenant_id=%s",
            correlation_id,
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            user_id,
            tenant_id,
        )

    return response


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    body = {"type": "domain_error", "code": exc.code, "message": exc.message}
    if exc.details is not None:
        body["details"] = exc.details
    return _error(409, body, request)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _error(404, {"type": "not_found", "message": "Resource not found"}, request)


@app.exception_handler(StorageKeyError)
async def storage_key_handler(request: Request, exc: StorageKeyError):
    logger.warning("Rejected storage key correlation_id=%s: %s", request.state.correlation_id, exc)
    return _error(404, {"type": "not_found", "message": "Resource not found"}, request)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path", "header")]
        fields.append({"field": ".".join(loc), "message": err.get("msg", "Invalid value")})
    return _error(400, {"type": "validation_error", "fields": fields}, request)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code in (401, 403):
        return _error(exc.status_code, {"type": "auth_error", "message": str(exc.detail)}, request)
    if exc.status_code == 404:
        return _error(404, {"type": "not_found", "message": "Resource not found"}, request)
    return _error(exc.status_code, {"type": "http_error", "message": str(exc.detail)}, request)


@app.on_event("startup")
def startup():
    """Initialize database tables and storage on startup."""
    _validate_hipaa_runtime()
    logger.info("Initializing database...")
    init_db()
    ensure_dirs()
    logger.info("Database initialized")


# Register routes
from apps.api.routes.documents import router as documents_router  # noqa: E402
from apps.api.routes.encounters import router as encounters_router  # noqa: E402
from apps.api.routes.lab_workflow import router as lab_router  # noqa: E402
from apps.api.routes.patients import router as patients_router  # noqa: E402

app.include_router(patients_router)
app.include_router(encounters_router)
app.include_router(lab_router)
app.include_router(documents_router)


@app.get("/health")
def health():
    if not ping_db():
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "database": "unavailable", "version": API_VERSION},
        )
    return {"status": "ok", "database": "ok", "version": API_VERSION}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("apps.api.main:app", host="0.0.0.0", port=8000, reload=True)
