from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Optional
import logging
import time

from cropscan.config import Settings, settings as default_settings
from cropscan.dependencies import Services, build_services
from cropscan.errors import CropScanError, StorageError
from cropscan.routers import photos

logger = logging.getLogger(__name__)


def create_app(config: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Build the API.

    Args:
        config: Settings to use, defaults to the environment-loaded settings
        services: Pre-built services (tests inject these); built from config otherwise
    """
    config = config or default_settings
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: wire services, prepare storage and schema
        start = time.time()
        if app.state.services is None:
            app.state.services = build_services(config)
        await app.state.services.startup()
        logger.info(f"Services ready in {time.time() - start:.2f}s")

        yield

        # Shutdown: release the HTTP client and worker pool
        await app.state.services.shutdown()

    app = FastAPI(
        title="CropScan API",
        description="Crop photo ingestion and disease analysis",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.services = services

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CropScanError)
    async def cropscan_error_handler(request: Request, exc: CropScanError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    app.include_router(photos.router, prefix=config.api_prefix)

    @app.get("/health")
    async def health_check():
        """Record store and blob store status"""
        services: Services = app.state.services
        try:
            database_ok = await services.repository.ping()
        except StorageError as e:
            logger.warning(f"Health check: record store unavailable: {e}")
            database_ok = False

        return {
            "status": "healthy" if database_ok else "degraded",
            "service": "cropscan-api",
            "version": "1.0.0",
            "record_store": "ok" if database_ok else "unavailable",
            "analysis_configured": services.vision_client.configured,
            "storage": await services.blob_store.stats(),
        }

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "message": "CropScan API",
            "docs": "/docs",
            "health": "/health"
        }

    return app


app = create_app()
