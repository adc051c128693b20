"""
FastAPI Server for the relay backend
Node heartbeats, node config pulls and payment gateway callbacks
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from loguru import logger

from config.config import validate_config, API_HOST, API_PORT, ENVIRONMENT
from config.logging import setup_logging
from config.sentry import init_sentry
from src.cache.redis_manager import get_redis_manager
from src.database.engine import check_connection, dispose_engine
from src.api.router import router as api_router

# Setup logging at module level (must run before app creation)
# This ensures logging works when uvicorn imports the module
setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup/shutdown events
    """
    # Startup
    logger.info("Starting relay API server...")

    init_sentry()

    # NOTE: Database schema is managed outside this service

    redis_manager = get_redis_manager()
    if not await redis_manager.initialize():
        logger.warning("Redis unavailable: traffic accounting skipped, settlement runs unlocked")

    yield

    # Shutdown
    logger.info("Shutting down relay API server...")

    await redis_manager.close()
    await dispose_engine()
    logger.info("Database connections closed")


app = FastAPI(
    title="Relay Backend API",
    description="Metering and settlement API for relay nodes",
    version="1.0.0",
    lifespan=lifespan,
)

# All API endpoints live under /api
app.include_router(api_router, prefix="/api")


# Root endpoint
@app.get("/")
async def root():
    return {
        "service": "Relay Backend API",
        "version": "1.0.0",
        "status": "running",
    }


# Health check endpoint
@app.get("/health")
async def health():
    """
    Health check endpoint
    """
    database_ok = await check_connection()
    return {
        "status": "healthy" if database_ok else "degraded",
        "database": database_ok,
        "redis": get_redis_manager().is_available(),
    }


# Error handler for HTTPException (must be before generic Exception handler)
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """
    Return the original status code with {"code", "message"} body
    """
    # Log 4xx as warning, 5xx as error
    if exc.status_code >= 500:
        logger.error(f"HTTP {exc.status_code}: {exc.detail}")
    elif exc.status_code >= 400:
        logger.warning(f"HTTP {exc.status_code}: {exc.detail}")

    return JSONResponse(
        status_code=exc.status_code,
        content={"code": exc.status_code, "message": exc.detail},
    )


# Error handler for unexpected exceptions
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler for unexpected errors
    """
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "code": 500,
            "message": str(exc) if ENVIRONMENT == "development" else "Internal server error",
        },
    )


if __name__ == "__main__":
    import uvicorn

    # Validate configuration
    try:
        validate_config()
    except ValueError as e:
        logger.error(str(e))
        exit(1)

    logger.info("Configuration validated successfully")

    uvicorn.run(
        "api_server:app",
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )
