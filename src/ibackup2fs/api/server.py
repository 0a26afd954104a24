"""FastAPI server setup."""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from ibackup2fs import APP_NAME, __version__
from ibackup2fs.common import ConfigLoader, ConfigurationError, setup_logging
from ibackup2fs.normalizer import NormalizerConfig

from .manager import ExtractionManager

logger = logging.getLogger(__name__)


def create_app(config: Optional[NormalizerConfig] = None) -> FastAPI:
    """Create and configure FastAPI application."""
    config = config or NormalizerConfig()
    manager = ExtractionManager(config, log_buffer_size=config.api.log_buffer_size)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        manager.shutdown()

    app = FastAPI(
        title=APP_NAME,
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.manager = manager

    from .routes import extraction, health

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(extraction.router, prefix="/api", tags=["extraction"])

    logger.info(
        "FastAPI application created",
        extra={"extra_fields": {"app_name": APP_NAME, "version": __version__}},
    )

    return app


def main() -> int:
    """Entry point for ibackup2fs-server."""
    try:
        config = ConfigLoader(app_name=APP_NAME, config_class=NormalizerConfig).load()
    except ConfigurationError as e:
        setup_logging(level="ERROR")
        logger.error(str(e))
        return 2

    config.logging.apply()

    import uvicorn

    logger.info(
        "Starting API server",
        extra={"extra_fields": {"host": config.api.host, "port": config.api.port}},
    )
    try:
        uvicorn.run(
            create_app(config),
            host=config.api.host,
            port=config.api.port,
            log_config=None,  # Use our logging setup
        )
    except KeyboardInterrupt:
        logger.info("Server interrupted by user")
    return 0


if __name__ == "__main__":
    sys.exit(main())
