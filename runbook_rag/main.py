"""runbook-rag FastAPI application entry point.

Loads ``.env`` and ``config/config.yaml``, configures structured logging,
builds every component through :mod:`runbook_rag.factory` and mounts the
API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI

from runbook_rag import __version__
from runbook_rag.api.middleware import (
    ErrorHandlingMiddleware,
    RequestLoggingMiddleware,
    configure_cors,
    register_validation_handler,
)
from runbook_rag.api.routes import router as api_router
from runbook_rag.config.loader import load_config
from runbook_rag.config.settings import Settings
from runbook_rag.factory import build_components, close_components, initialize_stores
from runbook_rag.utils.logging import configure_logging, get_logger

_logger: structlog.BoundLogger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Application lifespan (startup / shutdown)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def _lifespan(application: FastAPI):  # noqa: ANN201
    """Build components on startup; drain and close them on shutdown."""
    app_settings: Settings = application.state.settings
    config = load_config(app_settings.config_path)
    components = build_components(app_settings, config)

    for key, value in components.items():
        setattr(application.state, key, value)

    if app_settings.auto_migrate:
        await initialize_stores(components)

    _logger.info(
        "app_startup",
        version=__version__,
        environment=app_settings.app_env,
        store_backend=app_settings.store_backend,
        embedding_provider=components["embedding_client"].provider_name,
    )

    yield

    await close_components(components)
    _logger.info("app_shutdown")


# ---------------------------------------------------------------------------
# FastAPI application factory
# ---------------------------------------------------------------------------


def create_app(app_settings: Settings | None = None) -> FastAPI:
    """Build and configure the FastAPI application.

    Parameters
    ----------
    app_settings:
        Settings to run with; read from the environment when omitted.
    """
    app_settings = app_settings or Settings()
    configure_logging(
        log_level=app_settings.log_level,
        json_output=(app_settings.app_env == "production"),
    )

    application = FastAPI(
        title="runbook-rag API",
        version=__version__,
        description=(
            "Upload incident runbooks (PDF or Markdown), index them as embedded "
            "chunks, and search them with hybrid vector and keyword ranking."
        ),
        lifespan=_lifespan,
    )
    application.state.settings = app_settings

    # -- Middleware (last added = first executed) --
    application.add_middleware(ErrorHandlingMiddleware)
    application.add_middleware(RequestLoggingMiddleware)
    configure_cors(application, allowed_origins=app_settings.cors_allowed_origins)
    register_validation_handler(application)

    application.include_router(api_router)
    return application


def run() -> None:
    """Serve the app with uvicorn using ``APP_HOST`` and ``APP_PORT``."""
    app_settings = Settings()
    uvicorn.run(
        "runbook_rag.main:create_app",
        factory=True,
        host=app_settings.app_host,
        port=app_settings.app_port,
        log_config=None,
    )


if __name__ == "__main__":
    run()
