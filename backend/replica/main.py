"""FastAPI application entrypoint and configuration.

This module provides the main FastAPI application factory that configures
logging, sets up CORS middleware, includes the layer and tile routers and
exposes a health check endpoint for monitoring. Layer workers are shut
down together with the application.

Example:
    The application can be run with uvicorn:
        $ uvicorn replica.main:app --reload

    Or imported and used programmatically:
        >>> from replica.main import create_app
        >>> app = create_app()
"""

import contextlib
import logging
from collections.abc import AsyncIterator

import fastapi
from fastapi.middleware import cors

from replica.api import layers, tiles
from replica.core import config

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: fastapi.FastAPI) -> AsyncIterator[None]:
    yield
    if layers.get_worker.cache_info().currsize:
        logger.info("Stopping layer workers")
        layers.get_worker().shutdown(wait=True)


def create_app() -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Applies the configured log level, includes the layer and tile routers
    and adds a health check endpoint. CORS origins are configured from
    settings, allowing cross-origin requests from specified domains.

    Returns:
        Configured FastAPI application instance ready for ASGI server.
    """
    settings = config.get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = fastapi.FastAPI(title="Vector Replica", version="0.1.0", lifespan=lifespan)

    app.include_router(layers.router)
    app.include_router(tiles.router)

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, str]:  # type: ignore[misc]
        """Health check endpoint for monitoring and load balancers.

        Returns:
            Dictionary with status "ok" if the service is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
