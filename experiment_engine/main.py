from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from experiment_engine.api.v1.router import api_router
from experiment_engine.config import get_settings
from experiment_engine.core.cache import close_redis, get_redis
from experiment_engine.core.logging import configure_logging
from experiment_engine.middleware import TelemetryMiddleware
from experiment_engine.services.experiments.errors import (
    ExcludedError,
    ExperimentError,
    InvalidStateError,
    NotAssignedError,
    NotFoundError,
    UnknownVariantError,
    ValidationError,
)
from experiment_engine.services.experiments.repository import RedisExperimentRepository
from experiment_engine.services.experiments.service import ExperimentService

settings = get_settings()
logger = structlog.get_logger("app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    configure_logging(settings.LOG_LEVEL, json_logs=settings.ENVIRONMENT != "development")
    logger.info("app_starting", environment=settings.ENVIRONMENT)

    redis = await get_redis()
    repository = RedisExperimentRepository(redis) if redis is not None else None

    service = ExperimentService(settings, repository=repository)
    await service.start()
    app.state.experiment_service = service
    yield
    # Shutdown
    logger.info("app_stopping")
    await service.shutdown()
    await close_redis()
    logger.info("app_stopped")


app = FastAPI(
    title=settings.APP_NAME,
    description="A/B experiment assignment and statistical inference engine",
    version="0.1.0",
    docs_url=f"{settings.API_V1_PREFIX}/docs",
    redoc_url=f"{settings.API_V1_PREFIX}/redoc",
    lifespan=lifespan,
)

# CORS middleware
if settings.CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(TelemetryMiddleware)

# Include routers
app.include_router(api_router, prefix=settings.API_V1_PREFIX)


def error_status(exc: ExperimentError) -> int:
    if isinstance(exc, (NotFoundError, UnknownVariantError)):
        return 404
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, (InvalidStateError, NotAssignedError)):
        return 409
    if isinstance(exc, ExcludedError):
        return 200
    return 400


@app.exception_handler(ExperimentError)
async def experiment_error_handler(request: Request, exc: ExperimentError):
    content = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, ValidationError):
        content["rule"] = exc.rule
    return JSONResponse(status_code=error_status(exc), content=content)


@app.get("/")
async def root():
    return {
        "app": settings.APP_NAME,
        "version": "0.1.0",
        "environment": settings.ENVIRONMENT,
        "stats_backend": settings.STATS_BACKEND,
    }
