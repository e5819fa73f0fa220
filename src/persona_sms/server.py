"""FastAPI application factory and logging setup."""

from __future__ import annotations

import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from .config import AppConfig
from .routes import init_routes
from .service_context import ServiceContext
from .services.delivery import DeliveryClient
from .services.generation import ReplyGenerator
from .storage.sqlite_store import SQLiteStore


def setup_logging(level: str = "INFO") -> None:
    """Replace loguru's default sink with a stderr sink at ``level``."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - {message}"
        ),
        backtrace=False,
    )


def create_app(
    config: AppConfig,
    generator: ReplyGenerator | None = None,
    delivery: DeliveryClient | None = None,
    store: SQLiteStore | None = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        config: Application configuration
        generator: Optional reply generator override
        delivery: Optional delivery client override
        store: Optional storage override

    Returns:
        FastAPI: App whose lifespan opens storage, seeds personas and runs
            the worker pool.
    """
    service_context = ServiceContext(config, generator=generator, delivery=delivery, store=store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service_context.initialize()
        try:
            yield
        finally:
            await service_context.close()

    app = FastAPI(title="persona-sms", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "x-api-key"],
    )
    app.state.service_context = service_context
    app.include_router(init_routes(service_context))
    return app
