"""
Main FastAPI application.

This is the entry point for the API server.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI

from prospect_research.core.config import Settings
from prospect_research.core.dependencies import build_container
from prospect_research.db.session import build_engine, build_session_factory
from prospect_research.errors import install_error_handlers
from prospect_research.routers import batch_prospects, health

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the app; engine, HTTP client and services live for the app's lifespan."""
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)
        app.state.session_factory = build_session_factory(engine)
        http_client = httpx.AsyncClient()
        app.state.container = build_container(settings, app.state.session_factory, http_client)
        logger.info("Starting %s...", settings.APP_NAME)

        yield

        logger.info("Shutting down %s...", settings.APP_NAME)
        await app.state.container.side_effects.drain(timeout=30)
        await http_client.aclose()
        await engine.dispose()

    app = FastAPI(
        title=settings.APP_NAME,
        description="Batch prospect research: job/item state machine, dispatcher and research executor",
        version="0.1.0",
        lifespan=lifespan,
    )
    install_error_handlers(app)

    app.include_router(health.router, tags=["Health"])
    app.include_router(batch_prospects.router)
    return app


app = create_app()
