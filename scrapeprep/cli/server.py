from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from scrapeprep.agent.collaborators import Collaborators
from scrapeprep.api.deps import build_services
from scrapeprep.api.error_handlers import install_error_handlers
from scrapeprep.api.routes_runs import router as runs_router
from scrapeprep.config.loader import load_config
from scrapeprep.config.schema import AppConfig
from scrapeprep.models.collaborators import CrawlExecutor

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def create_app(
    config: AppConfig | None = None,
    collaborators: Collaborators | None = None,
    executor: CrawlExecutor | None = None,
) -> FastAPI:
    config = config or load_config()
    configure_logging(config.logging.level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        services = build_services(config, collaborators=collaborators, executor=executor)
        services.start()
        app.state.services = services
        logger.info("Run store ready at %s", services.store.url)
        try:
            yield
        finally:
            logger.info("Shutting down; waiting for in-flight runs")
            await services.shutdown()

    app = FastAPI(
        title="Scrape Preparation Service",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )
    install_error_handlers(app)
    app.include_router(runs_router)
    return app


app = create_app()
