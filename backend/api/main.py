"""
Main FastAPI application entry point.

Responsibilities:
- Initialize FastAPI app
- Configure CORS
- Translate staging errors into HTTP responses
- Include routers
- Setup startup/shutdown events
"""
from __future__ import annotations

import logging
import os
import sys

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.routes import credits, staging
from models.database import close_db, get_pool_status
from config import log_missing_env_vars
from services.errors import StagingError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    stream=sys.stdout,
)

app = FastAPI(title="Room Staging API", version="1.0.0")

# CORS configuration - allow frontend origins
def _normalize_origin(origin: str) -> str:
    """Normalize origin values for robust CORS/CSRF checks."""
    return origin.strip().rstrip("/")


cors_origins: list[str] = [
    "http://localhost:3000",  # Next.js dev server
    "https://roomsthatsell.com",
    "https://www.roomsthatsell.com",
    "https://app.roomsthatsell.com",
]

# Add production frontend URL from environment (if different)
frontend_url = os.environ.get("FRONTEND_URL")
if frontend_url:
    cors_origins.append(frontend_url)

allowed_origins = {_normalize_origin(origin) for origin in cors_origins}


def get_cors_headers(origin: str | None) -> dict[str, str]:
    """Return CORS headers if origin is allowed."""
    normalized_origin = _normalize_origin(origin) if origin else None
    if normalized_origin and normalized_origin in allowed_origins:
        return {
            "Access-Control-Allow-Origin": normalized_origin,
            "Access-Control-Allow-Credentials": "true",
            "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS, PATCH",
            "Access-Control-Allow-Headers": "*",
        }
    return {}


app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(allowed_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
)


@app.middleware("http")
async def csrf_protection_middleware(request: Request, call_next):
    """Block unsafe cross-site cookie requests as a CSRF defense-in-depth layer."""
    unsafe_methods = {"POST", "PUT", "PATCH", "DELETE"}
    if request.method in unsafe_methods:
        origin = request.headers.get("origin")
        has_cookies = "cookie" in request.headers
        if origin and has_cookies:
            normalized_origin = _normalize_origin(origin)
            if normalized_origin not in allowed_origins:
                logging.warning(
                    "Blocked potential CSRF request",
                    extra={
                        "method": request.method,
                        "path": request.url.path,
                        "origin": origin,
                    },
                )
                return JSONResponse(
                    status_code=403,
                    content={"detail": "CSRF validation failed"},
                )
    return await call_next(request)

# Global exception handler to ensure CORS headers on all errors
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle all uncaught exceptions with CORS headers."""
    origin = request.headers.get("origin")
    cors_headers = get_cors_headers(origin)
    logging.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
        headers=cors_headers,
    )


@app.exception_handler(StagingError)
async def staging_error_handler(request: Request, exc: StagingError) -> JSONResponse:
    """Surface service errors with their status code and message only."""
    origin = request.headers.get("origin")
    if exc.http_status >= 500:
        logging.error("Staging error on %s: %s", request.url.path, exc.message)
    else:
        logging.info(
            "Request rejected",
            extra={"path": request.url.path, "code": exc.code, "status": exc.http_status},
        )
    return JSONResponse(
        status_code=exc.http_status,
        content={"detail": exc.message, "code": exc.code},
        headers=get_cors_headers(origin),
    )


# Routes
app.include_router(staging.router, prefix="/api/staging", tags=["staging"])
app.include_router(credits.router, prefix="/api/credits", tags=["credits"])


@app.on_event("startup")
async def startup() -> None:
    """Log configuration gaps on startup."""
    log_missing_env_vars(logging.getLogger("config"))
    logging.info("Database connection pool ready")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Clean up database connections on shutdown."""
    logging.info("Shutting down, closing database connections...")
    await close_db()
    logging.info("Database connections closed")


@app.get("/")
async def root_health_check() -> dict[str, str]:
    """Root endpoint exposing the health check payload."""
    logging.info("Root health check requested")
    return await health_check()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    logging.info("Health check requested")
    return {"status": "ok"}


@app.get("/health/db")
async def db_health_check() -> dict[str, object]:
    """Database health check with pool status."""
    try:
        pool_status = get_pool_status()
        return {
            "status": "ok",
            "pool": pool_status,
        }
    except Exception as e:
        return {
            "status": "error",
            "error": str(e),
        }
