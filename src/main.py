"""FastAPI application entry point.

Run with: uvicorn src.main:app --reload --port 8000
"""

# ruff: noqa: E402  -- uvloop.install() must run before other imports

import uvloop

uvloop.install()

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config.settings import settings
from src.lp_common.database import check_database, engine
from src.lp_common.errors import AppError
from src.lp_common.redis_client import close_redis, get_redis
from src.lp_common.response import error_response
from src.lp_gateway.middleware.request_log import RequestLogMiddleware, request_id_of
from src.lp_points.api.admin_router import router as admin_points_router
from src.lp_points.api.router import router as points_router
from src.lp_points.infrastructure.scheduler import start_expiry_scheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup: logging, verify DB + Redis connections, start sweep. Shutdown: dispose."""
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    await check_database()
    await get_redis()

    scheduler = start_expiry_scheduler() if settings.EXPIRY_SWEEP_ENABLED else None
    yield
    if scheduler is not None:
        scheduler.shutdown(wait=False)
    await engine.dispose()
    await close_redis()


app = FastAPI(
    title=settings.APP_NAME,
    version="0.1.0",
    lifespan=lifespan,
)


app.add_middleware(RequestLogMiddleware)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    resp = error_response(exc.code, exc.message, request_id_of(request))
    return JSONResponse(
        status_code=exc.http_status,
        content=resp.model_dump(),
    )


app.include_router(points_router, prefix="/api/v1")
app.include_router(admin_points_router, prefix="/api/v1")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok", "version": "0.1.0"}
