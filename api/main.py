"""
FastAPI application initialization
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import health, connectors, data_sources, jobs
from api.dependencies import init_services, get_services
from api.middleware import RequestContextMiddleware
from core.config import settings
from core.exceptions import (
    ConnectorNotRegisteredError,
    IngestionException,
    InvalidCronExpressionError,
    JobAlreadyPausedError,
    JobNotFoundError,
    ValidationError,
)
from core.logging import setup_logging
import logging

setup_logging()

logger = logging.getLogger(__name__)

# Most specific first; the first isinstance match wins
ERROR_STATUS_CODES = (
    (JobNotFoundError, 404),
    (ConnectorNotRegisteredError, 404),
    (JobAlreadyPausedError, 409),
    (InvalidCronExpressionError, 422),
    (ValidationError, 422),
)

# Create FastAPI app
app = FastAPI(
    title="Ingestion Hub API",
    description="Management API for connectors, data sources and scheduled ingestion jobs",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)


# Include routers
app.include_router(health.router)
app.include_router(connectors.router)
app.include_router(data_sources.router)
app.include_router(jobs.router)


@app.exception_handler(IngestionException)
async def ingestion_exception_handler(request: Request, exc: IngestionException):
    status_code = next((code for error_type, code in ERROR_STATUS_CODES if isinstance(exc, error_type)), 500)
    request_id = getattr(request.state, "request_id", None)
    if status_code >= 500:
        logger.error(f"[{request_id}] Unhandled ingestion error", extra={"error_context": exc.to_dict()})
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "error_type": type(exc).__name__, "request_id": request_id},
    )


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Ingestion Hub API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    services = init_services()
    logger.info(f"{services.registry.count} connectors registered")
    await services.scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Ingestion Hub API")
    get_services().scheduler.stop()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Ingestion Hub API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "connectors": "/connectors",
            "data_sources": "/data-sources",
            "jobs": "/jobs"
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.main:app", host=settings.API_HOST, port=settings.API_PORT)
