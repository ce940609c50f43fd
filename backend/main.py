import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from patchdeploy import __version__
from patchdeploy.api.api import api_router
from patchdeploy.core.config import settings
from patchdeploy.db import create_store
from patchdeploy.services.collaborators import (
    ConnectionRegistry,
    InMemoryConnectionRegistry,
    InMemoryPatchSource,
    PatchSource,
)
from patchdeploy.services.credential_service import CredentialVault
from patchdeploy.services.deployment_service import DeploymentEngine
from patchdeploy.services.transports import build_default_transports
from patchdeploy.utils.logging.structured import configure_logging
from patchdeploy.utils.metrics import setup_metrics

logger = logging.getLogger(__name__)

PURGE_INTERVAL_SECONDS = 60 * 60


def build_engine(
    patch_source: Optional[PatchSource] = None,
    connections: Optional[ConnectionRegistry] = None,
) -> DeploymentEngine:
    """
    Wire the engine from settings.

    Production deployments must inject the patch source and connection
    registry backed by the scanner and site inventory. The in-memory defaults
    start empty, so every submit answers 404 until something is added to them.

    Args:
        patch_source: Patch package source; empty in-memory source when omitted
        connections: Connection registry; empty in-memory registry when omitted
    """
    if patch_source is None or connections is None:
        logger.warning("No patch source or connection registry injected; using empty in-memory collaborators")
    credentials = CredentialVault()
    return DeploymentEngine(
        patch_source=patch_source or InMemoryPatchSource(),
        connections=connections or InMemoryConnectionRegistry(),
        transports=build_default_transports(credentials),
        store=create_store(),
        credentials=credentials,
    )


async def purge_periodically(engine: DeploymentEngine, interval: float = PURGE_INTERVAL_SECONDS) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await engine.purge_expired()
        except Exception as e:
            logger.error(f"Retention cleanup failed: {str(e)}")


def create_app(engine: Optional[DeploymentEngine] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        engine: Engine to serve; built from settings at startup when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {settings.PROJECT_NAME} API")
        app.state.engine = engine or build_engine()
        purge_task = asyncio.create_task(purge_periodically(app.state.engine))
        try:
            yield
        finally:
            logger.info(f"Shutting down {settings.PROJECT_NAME} API")
            purge_task.cancel()
            await asyncio.gather(purge_task, return_exceptions=True)
            await app.state.engine.shutdown()

    app = FastAPI(
        title=f"{settings.PROJECT_NAME} API",
        description="Deployment and rollback safety engine for live-site patches",
        version=__version__,
        lifespan=lifespan,
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if settings.ENABLE_METRICS:
        setup_metrics(app)

    app.include_router(api_router, prefix=settings.API_V1_STR)

    @app.get("/health")
    def health_check():
        state = getattr(app.state, "engine", None)
        return {
            "status": "healthy",
            "active_deployments": len(state.list_active()) if state else 0,
        }

    return app


configure_logging(
    service_name="patchdeploy",
    log_level=settings.LOG_LEVEL,
    development_mode=settings.ENVIRONMENT == "development",
)
app = create_app()

# Run the app if this file is executed directly
if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
