"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from .config import settings
from .config.database import close_db, init_db
from .core.exceptions import UploadError
from .middleware.rate_limit import limiter, rate_limit_exceeded_handler
from .repositories.storage_repo import StorageRepository
from .routers import uploads
from .services.session_registry import ActiveUploadRegistry
from .utils.logger import configure_logging, get_logger

# Configure logging
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info(
        "Starting application",
        version=settings.app_version,
        storage_provider=settings.storage_provider,
    )
    await init_db()
    yield
    # Shutdown
    active = len(app.state.upload_registry)
    if active:
        # Sessions are in-memory only; their remote uploads stay open
        logger.warning("Shutting down with active multipart uploads", active_uploads=active)
    logger.info("Shutting down application")
    await close_db()


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Upload coordination for large audio files with single-shot and multipart storage",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Shared across requests; each request builds its own coordinator around these
app.state.upload_registry = ActiveUploadRegistry()
app.state.storage_repo = StorageRepository()

# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Exception handlers
@app.exception_handler(UploadError)
async def upload_error_handler(request: Request, exc: UploadError):
    """Map upload coordination errors to HTTP responses."""
    if exc.status_code >= 500:
        logger.error(
            "Upload storage error",
            path=request.url.path,
            upload_id=exc.upload_id,
            error=exc.message,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.message,
            "error": type(exc).__name__,
            "upload_id": exc.upload_id,
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler."""
    logger.error("Unhandled exception", exc_info=exc, path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "active_multipart_uploads": len(app.state.upload_registry),
    }


# Include routers
app.include_router(uploads.router)


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Audio Ingest API",
        "version": settings.app_version,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "audio_ingest.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
