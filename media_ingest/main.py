"""
MediaIngest - Video Ingestion & Transcoding Service
Main FastAPI Application Entry Point
"""

from pathlib import Path
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from fastapi.responses import JSONResponse

from .config import get_settings
from .utils.logger import setup_logger
from .utils.exceptions import MediaIngestError
from .routers import uploads_router, videos_router, system_router
from .routers.uploads import configure_job_queue, initialize_job_state
from .services.cleanup import get_janitor
from .services.job_queue import get_job_queue
from .services.pipeline import get_pipeline
from .services.storage import FINAL_DIRNAME, get_storage_manager


# Set up logging
logger = setup_logger()


async def start_services():
    """Open storage, recover job state, start workers and the janitor."""
    settings = get_settings()
    Path(settings.data_dir).mkdir(parents=True, exist_ok=True)
    storage = get_storage_manager()

    await initialize_job_state()
    configure_job_queue()
    await get_job_queue().start()
    get_janitor().start()

    logger.info("=" * 60)
    logger.info(f"{settings.app_name} - Video Ingestion & Transcoding")
    logger.info("=" * 60)
    logger.info(f"Storage root: {storage.root}")
    logger.info(f"Data directory: {settings.data_dir}")
    logger.info(f"Quality ladder: {', '.join(settings.quality_ladder)}")
    logger.info(f"Queue workers: {settings.job_worker_concurrency}")
    logger.info(f"Queue max pending jobs: {settings.max_pending_jobs}")
    logger.info(f"Max upload size: {settings.max_upload_size_mb}MB")

    engine = get_pipeline().engine
    verify = getattr(engine, "verify", None)
    if verify is not None and verify():
        logger.info("[OK] FFmpeg available")
    else:
        logger.warning("[!] FFmpeg not verified; uploads will fail at metadata extraction")

    logger.info("=" * 60)


async def stop_services():
    """Stop the janitor, interrupt running uploads, then stop the workers."""
    await get_janitor().stop()
    pipeline = get_pipeline()
    await pipeline.cancel_all()
    await get_job_queue().stop()
    engine = pipeline.engine
    shutdown = getattr(engine, "shutdown", None)
    if shutdown is not None:
        shutdown()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler"""
    await start_services()
    logger.info("Server started successfully!")
    logger.info("API Docs: http://localhost:8000/docs")

    yield

    # Cleanup on shutdown
    await stop_services()
    logger.info(f"Shutting down {get_settings().app_name}...")


# Create FastAPI app
settings = get_settings()
app = FastAPI(
    title=settings.app_name,
    description="Turns uploaded videos into multi-quality HLS streams with durable progress reporting",
    version=settings.app_version,
    lifespan=lifespan
)

# CORS middleware
cors_origins = settings.cors_allowed_origins or ["http://localhost:8000", "http://127.0.0.1:8000"]
cors_allow_credentials = "*" not in cors_origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Global Exception Handlers
# ============================================================================

@app.exception_handler(MediaIngestError)
async def media_ingest_exception_handler(request: Request, exc: MediaIngestError):
    """Handle all MediaIngest custom exceptions"""
    if exc.http_status >= 500:
        logger.error(f"MediaIngestError [{exc.code}]: {exc.message}")
    else:
        logger.warning(f"MediaIngestError [{exc.code}]: {exc.message}")
    return JSONResponse(
        status_code=exc.http_status,
        content=exc.to_dict()
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Render HTTP errors in the same shape as MediaIngest errors"""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTP_ERROR",
            "message": str(exc.detail),
            "recoverable": exc.status_code < 500,
            "recovery_hint": None,
            "details": {}
        }
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle any unhandled exceptions"""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "INTERNAL_ERROR",
            "message": "An unexpected error occurred. Please try again.",
            "recoverable": True,
            "recovery_hint": "If this persists, check the server logs for details."
        }
    )


# Include routers
app.include_router(uploads_router)
app.include_router(videos_router)
app.include_router(system_router)

# Static file serving for published media
final_path = Path(settings.storage_root) / FINAL_DIRNAME
final_path.mkdir(parents=True, exist_ok=True)
app.mount(settings.media_url_prefix, StaticFiles(directory=str(final_path)), name="media")


@app.get("/")
async def root():
    """Service banner"""
    return {"message": f"{settings.app_name} API", "docs": "/docs"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "media_ingest.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
