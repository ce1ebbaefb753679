"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import settings
from app.routes import analysis, fhir, ingest, rag

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events for startup/shutdown."""
    # Startup: ensure the index directory exists; indexes fall back to
    # memory-only mode if it cannot be written
    try:
        Path(settings.vector_index_dir).mkdir(parents=True, exist_ok=True)
        logger.info(f"Vector index directory: {settings.vector_index_dir}")
    except OSError as e:
        logger.warning(f"Vector index directory unavailable ({e}) - indexes will be memory-only")

    yield  # Application runs here

    # Shutdown: nothing needed currently


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Referrer policy
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # Health data must not be cached by intermediaries
        response.headers["Cache-Control"] = "no-store"
        return response


app = FastAPI(
    title="HealthRecord",
    description="Personal health record engine - FHIR normalization and retrieval-indexed analysis",
    version="0.1.0",
    lifespan=lifespan,
)

# Security headers middleware (applied to all responses)
app.add_middleware(SecurityHeadersMiddleware)

# CORS middleware for frontend
# Parse comma-separated origins from config
_cors_origins = [origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["X-API-Key", "Content-Type"],
)

# Include API routers
app.include_router(fhir.router, prefix="/api")
app.include_router(ingest.router, prefix="/api")
app.include_router(rag.router, prefix="/api")
app.include_router(analysis.router, prefix="/api")


@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": "HealthRecord API",
        "version": "0.1.0",
        "docs": "/docs",
    }
