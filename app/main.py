from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.modules.ingestion.api.v1.ingestion import router as ingestion_router
from app.shared.adapters.registry import registered_providers
from app.shared.core.config import get_settings
from app.shared.core.exceptions import NimbusException
from app.shared.core.logging import setup_logging
from app.shared.db.session import dispose_engine, get_session_maker

# Configure logging
setup_logging()

# Get logger
logger = structlog.get_logger()


# This runs BEFORE the app starts (setup) and AFTER it stops (teardown).
@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("app_starting", app=settings.APP_NAME, environment=settings.ENVIRONMENT)

    yield

    logger.info("app_shutting_down", app=settings.APP_NAME)
    await dispose_engine()


settings = get_settings()

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan)

# Initialize Prometheus Metrics
Instrumentator().instrument(app).expose(app)


@app.exception_handler(NimbusException)
async def nimbus_exception_handler(request: Request, exc: NimbusException):
    logger.warning(
        "api_error",
        path=request.url.path,
        code=exc.code,
        kind=exc.kind.value,
        status_code=exc.status_code,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.message,
            "code": exc.code,
            "kind": exc.kind.value,
            "details": exc.details,
        },
    )


# Include routers
app.include_router(ingestion_router, prefix="/api/v1/ingestion")


# Every K8s pod needs a health check endpoint to prove it's alive
@app.get("/health")
async def health_check():
    database = "ok"
    try:
        async with get_session_maker()() as db:
            await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error("health_check_database_failed", error=str(e))
        database = "unavailable"

    return {
        "status": "active" if database == "ok" else "degraded",
        "app": settings.APP_NAME,
        "version": settings.VERSION,
        "database": database,
        "providers": registered_providers(),
    }
