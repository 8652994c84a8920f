"""FastAPI app entrypoint."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.api.routes import router
from src.cache.redis import create_redis_client
from src.config import get_settings
from src.db.base import create_engine, create_session_maker, create_tables
from src.logging_config import setup_logging
from src.scans.errors import ScanError
from src.scans.lifecycle import build_controller

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    # Initialize logging FIRST so all subsequent operations produce JSON logs
    setup_logging(settings.log_level)
    logger.info("starting scan service")

    redis_client = await create_redis_client(settings.redis_url)

    db_engine = create_engine(settings.database_url)
    await create_tables(db_engine)
    session_maker = create_session_maker(db_engine)

    controller = build_controller(settings, redis_client, session_maker)

    # Attach to app state for dependency injection
    app.state.settings = settings
    app.state.controller = controller

    reclaimed = await controller.reclaim_orphans(resume=settings.resume_orphaned_scans)

    logger.info(
        "scan service ready",
        extra={
            "environment": settings.environment,
            "rate_limit_per_hour": settings.rate_limit_per_hour,
            "scan_timeout_hours": settings.scan_timeout_hours,
            "orphans_reclaimed": reclaimed,
        },
    )

    yield

    # Cleanup
    logger.info("shutting down scan service")
    await controller.aclose()
    await db_engine.dispose()
    await redis_client.aclose()


app = FastAPI(title="Accessibility Scan Service", lifespan=lifespan)
app.include_router(router)


@app.exception_handler(ScanError)
async def scan_error_handler(request: Request, exc: ScanError):
    if exc.status_code >= 500:
        logger.error("scan request failed", extra={"path": request.url.path, "error": exc.message})
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, **exc.extra},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
    )


@app.get("/health")
async def health():
    return {"status": "ok"}
