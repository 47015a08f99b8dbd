"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Supabase (Dataset Store)
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_studies_table: str = "dicom_studies"

    # Dataset store backend
    dataset_store_backend: str = "supabase"  # "supabase" or "memory"

    # Dataset Source (PACS export service)
    source_url: str = "http://localhost:8042"
    source_username: str = "alice"
    source_password: str = "alicePassword"
    source_timeout_seconds: float = 10.0
    source_export_timeout_seconds: float = 300.0  # large studies take minutes

    # Object storage (any S3-compatible endpoint)
    storage_endpoint_url: Optional[str] = None
    storage_region: str = "us-east-1"
    storage_access_key_id: Optional[str] = None
    storage_secret_access_key: Optional[str] = None
    storage_bucket: str = "studyzip"
    storage_class: str = "STANDARD"
    storage_public_base_url: Optional[str] = None
    storage_chunk_size_mb: int = 5
    upload_timeout_seconds: float = 600.0

    # Archive creation
    archive_strategy: str = "delegated"  # "delegated" or "local"
    archive_concurrency: int = 3
    archive_retention_days: int = 30
    archive_image_format: str = "JPEG"
    archive_image_quality: int = 90

    # Retrieval
    presign_downloads: bool = False
    presign_expires_seconds: int = 3600

    # Expiration sweeper
    sweep_enabled: bool = True
    sweep_interval_seconds: int = 3600
    sweep_max_attempts: int = 5

    # Service
    service_port: int = 8001
    log_level: str = "INFO"
    log_file: Optional[str] = None

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
