"""
FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException

from kindred.api.v1.router import api_router
from kindred.core.config import settings
from kindred.core.errors import (
    AppError,
    app_exception_handler,
    general_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from kindred.core.logging import RequestIDMiddleware, get_logger, setup_logging
from kindred.infra.db import AsyncSessionLocal, close_db_connection, create_tables
from kindred.infra.queue import QueueFactory
from kindred.infra.redis import close_redis_pool, init_redis_pool, sync_redis
from kindred.realtime.hub import RealtimeHub
from kindred.services.llm_clients.openai_client import OpenAIClient

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    setup_logging()
    await init_redis_pool()

    if settings.db_auto_create:
        await create_tables()

    queue = None
    if settings.insight_queue == "RQ":
        queue = QueueFactory.get_queue(sync_redis(), "insights")
    app.state.hub = RealtimeHub(AsyncSessionLocal, llm=OpenAIClient(), queue=queue)
    logger.info(f"Realtime hub started (insights: {settings.insight_queue}, provider: {settings.insight_provider})")

    yield

    # Shutdown
    await app.state.hub.shutdown()
    await close_redis_pool()
    await close_db_connection()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Kindred Backend",
        description="Realtime chat and discovery games for matched couples",
        version="0.1.0",
        openapi_url=f"{settings.api_prefix}/openapi.json",
        lifespan=lifespan,
    )

    # Middleware
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_credentials,
        allow_methods=settings.cors_methods,
        allow_headers=settings.cors_headers,
    )

    # Routes
    app.include_router(api_router, prefix=settings.api_prefix)

    # Exception Handlers
    app.add_exception_handler(AppError, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    return app


app = create_app()
