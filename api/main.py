"""FastAPI application factory and server entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..utils.logging import configure_logging
from .config import ApiSettings
from .deps.providers import active_settings, configure, get_job_runner, get_job_store
from .errors import register_error_handlers

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    settings: ApiSettings = active_settings()
    configure_logging(settings.log_level, settings.log_format)
    logger.info("Starting music_dl_api on %s:%s", settings.host, settings.port)
    logger.info("Downloader: %s (default timeout %ss)", settings.downloader_path, settings.default_timeout)

    store = get_job_store()
    await store.initialize()

    yield

    # Stop running downloads before the registry goes away
    await get_job_runner().shutdown()
    await store.close()
    logger.info("Shutting down music_dl_api")


def create_app(settings: ApiSettings | None = None) -> FastAPI:
    """Build and return the FastAPI application."""
    configure(settings)
    settings = active_settings()

    app = FastAPI(
        title="Music Downloader API",
        description="Runs apple-music-dl downloads as background jobs and reports their progress.",
        version="1.0.0",
        lifespan=_lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # CORS
    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    allow_creds = "*" not in origins
    if not allow_creds:
        logger.warning(
            "CORS_ORIGINS contains '*'. Credentials will NOT be allowed. "
            "Set explicit origins for credentialed cross-origin requests."
        )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_creds,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Error handlers
    register_error_handlers(app)

    from .routers import all_routers

    for router in all_routers():
        app.include_router(router)

    return app


def run_server() -> None:
    """CLI entry point: ``python -m music_dl_api.api.main``."""
    import uvicorn

    settings = active_settings()
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run_server()
