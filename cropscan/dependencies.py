"""
Service wiring. Everything is built once at startup and hung off app.state;
routers reach it through the FastAPI dependencies below.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine

from cropscan import database
from cropscan.config import Settings, settings as default_settings
from cropscan.errors import StorageError
from cropscan.services import (
    BlobStore,
    IngestionService,
    InMemoryPhotoRepository,
    MetadataExtractor,
    PhotoRepository,
    PlantIdClient,
    ReportSynthesizer,
    SqlPhotoRepository,
)

logger = logging.getLogger(__name__)


@dataclass
class Services:
    blob_store: BlobStore
    metadata_extractor: MetadataExtractor
    repository: PhotoRepository
    vision_client: PlantIdClient
    synthesizer: ReportSynthesizer
    ingestion: IngestionService
    engine: Optional[AsyncEngine] = None
    recover_on_startup: bool = True

    async def startup(self):
        self.blob_store.initialize()
        if self.engine is not None:
            await database.init_db(self.engine)
        await self.sweep_orphans()
        if self.recover_on_startup:
            await self.recover_interrupted()
        if not self.vision_client.configured:
            logger.warning("Plant.id API key not set, every analysis will use the fallback report")

    async def sweep_orphans(self) -> int:
        try:
            known = await self.repository.all_blob_keys()
        except StorageError as e:
            logger.warning(f"Skipping orphan sweep, record store unavailable: {e}")
            return 0
        return await self.blob_store.purge_orphans(known)

    async def recover_interrupted(self) -> int:
        try:
            return await self.ingestion.recover_interrupted()
        except StorageError as e:
            logger.warning(f"Skipping interrupted photo recovery, record store unavailable: {e}")
            return 0

    async def shutdown(self):
        await self.vision_client.aclose()
        self.metadata_extractor.shutdown()
        if self.engine is not None:
            await self.engine.dispose()


def build_repository(config: Settings):
    if config.record_store == "memory":
        logger.info("Using in-memory photo store")
        return InMemoryPhotoRepository(snapshot_path=config.snapshot_path), None
    if config.record_store == "database":
        engine = database.create_engine(config.database_url, config.database_echo)
        return SqlPhotoRepository(engine), engine
    raise ValueError(f"Unknown record_store '{config.record_store}' (expected 'memory' or 'database')")


def build_services(
    config: Optional[Settings] = None,
    repository: Optional[PhotoRepository] = None,
    http_client: Optional[httpx.AsyncClient] = None
) -> Services:
    """
    Wire the pipeline from settings.

    Args:
        config: Settings, defaults to the environment-loaded ones
        repository: Use this record store instead of the configured one
        http_client: Client for the vision API (tests pass a mocked transport)
    """
    config = config or default_settings

    engine = None
    if repository is None:
        repository, engine = build_repository(config)

    blob_store = BlobStore(
        upload_dir=config.upload_dir,
        ephemeral=config.ephemeral_storage,
        inline_fallback=config.inline_fallback,
        max_upload_size=config.max_upload_size,
        thumbnail_size=config.thumbnail_size,
    )
    metadata_extractor = MetadataExtractor(blob_store, max_workers=config.metadata_workers)
    vision_client = PlantIdClient(
        blob_store,
        api_key=config.plant_id_api_key,
        base_url=config.plant_id_api_url,
        timeout=config.plant_id_timeout,
        http_client=http_client,
    )
    synthesizer = ReportSynthesizer()
    ingestion = IngestionService(
        blob_store,
        metadata_extractor,
        repository,
        vision_client,
        synthesizer=synthesizer,
        analysis_retries=config.analysis_retries,
    )
    return Services(
        blob_store=blob_store,
        metadata_extractor=metadata_extractor,
        repository=repository,
        vision_client=vision_client,
        synthesizer=synthesizer,
        ingestion=ingestion,
        engine=engine,
        recover_on_startup=config.recover_on_startup,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_ingestion_service(request: Request) -> IngestionService:
    return get_services(request).ingestion


def get_repository(request: Request) -> PhotoRepository:
    return get_services(request).repository


def get_synthesizer(request: Request) -> ReportSynthesizer:
    return get_services(request).synthesizer
