from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from sandbox_relay.core.config import settings
from sandbox_relay.core.exceptions import SandboxRelayError, error_response, status_code_for
from sandbox_relay.core.logging_config import logger
from sandbox_relay.core.middleware import RequestLoggingMiddleware
from sandbox_relay.api.v1.router import api_router
from sandbox_relay.api.v1.endpoints import health
from sandbox_relay.services.state_store import state_store


def log_startup_config():
    """Warn about configuration that will fail requests later"""
    warnings = []

    if not settings.DAYTONA_API_KEY:
        warnings.append("DAYTONA_API_KEY not set - sandbox requests will fail")
    if not settings.ANTHROPIC_API_KEY:
        warnings.append("ANTHROPIC_API_KEY not set - new sandboxes cannot be created")
    if not settings.uses_redis():
        warnings.append("REDIS_URL not set - state is kept in process memory (single worker only)")

    for warn in warnings:
        logger.warning(f"[Startup] WARNING: {warn}")

    logger.info(f"[Startup] Snapshot: {settings.SANDBOX_SNAPSHOT}, dev server port: {settings.DEV_SERVER_PORT}")
    logger.info(f"[Startup] Agent stream timeout: {settings.AGENT_STREAM_TIMEOUT:.0f}s")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    logger.info("=" * 60)
    logger.info(f"Starting {settings.APP_NAME}...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info("=" * 60)

    log_startup_config()

    # Fail fast when Redis is configured but unreachable
    await state_store.connect()
    logger.info(f"[Startup] State store ready ({state_store.backend})")

    yield

    logger.info(f"Shutting down {settings.APP_NAME}...")
    await state_store.close()


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    description="Per-tenant remote sandbox manager with a streaming agent bridge",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
    redirect_slashes=False
)

# Add middleware (order matters - last added runs first)
app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Response-Time"],
)


# Exception handlers
@app.exception_handler(SandboxRelayError)
async def relay_exception_handler(request: Request, exc: SandboxRelayError):
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.log_error_with_context(exc, f"{request.method} {request.url.path}")
    else:
        logger.warning(f"[API] {exc.code}: {exc.message}")
    return JSONResponse(status_code=status_code, content=error_response(exc))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "message": str(exc) if settings.is_dev_mode() else "An error occurred"
        }
    )


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "app_name": settings.APP_NAME,
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT
    }


app.include_router(health.router)
app.include_router(api_router, prefix=settings.API_PREFIX)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "sandbox_relay.main:app",
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        reload=settings.DEBUG
    )
