from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    # Record store - "memory" for tests/ephemeral hosts, "database" for production
    record_store: str = "database"
    database_url: str = "sqlite+aiosqlite:///./cropscan.db"
    database_echo: bool = False
    snapshot_path: Optional[str] = None  # JSON snapshot for the in-memory store

    # Blob storage
    upload_dir: str = "./uploads"
    ephemeral_storage: bool = False  # Skip the disk entirely (sandboxed/preview hosts)
    inline_fallback: bool = True
    thumbnail_size: int = 300
    max_upload_size: int = 20 * 1024 * 1024  # 20 MiB

    # CORS - allow dashboard
    cors_origins: List[str] = ["http://localhost:3000", "*"]
    api_prefix: str = ""

    # Plant.id disease identification
    plant_id_api_key: Optional[str] = None
    plant_id_api_url: str = "https://plant.id/api/v3"
    plant_id_timeout: float = 60.0
    analysis_retries: int = 1  # Extra attempts on transient upstream failures
    # Fail photos left pending/analyzing by a previous run; disable when several
    # workers share one record store
    recover_on_startup: bool = True

    # Metadata extraction worker pool
    metadata_workers: int = 4

    log_level: str = "INFO"

    class Config:
        env_file = ".env"


settings = Settings()
