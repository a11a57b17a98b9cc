"""
Configuration for the Sync Engine
=================================

Environment variables:
- SUPABASE_URL: Backend project URL (e.g. https://xyz.supabase.co)
- SUPABASE_ANON_KEY: Public API key sent with every request
- SUPABASE_SERVICE_KEY: Service-role key (retention sweep only)
- STORAGE_BUCKET: Object storage bucket for document blobs (default: documents)
- SYNC_TIMEOUT: Timeout for bulk reads/writes in seconds (default: 30)
- CHECK_TIMEOUT: Timeout for schema checks in seconds (default: 5)
- SESSION_TIMEOUT: Timeout for session validation in seconds (default: 10)
- PUSH_BATCH_SIZE: Records per upsert call during sync (default: 40)
- RESTORE_BATCH_SIZE: Records per upsert call during bulk restore (default: 50)
- TOMBSTONE_RETENTION_DAYS: Trailing window of deletions fetched (default: 30)
- DOCUMENT_RETENTION_HOURS: Age after which the sweep removes remote documents (default: 48)
- TOMBSTONE_GRACE_SECONDS: Clock-skew allowance when applying tombstones (default: 2)
- DATABASE_URL: Local store database (default: sqlite:///./casesync.db)
- BLOB_DIR: Directory holding downloaded/pending document blobs
- REDIS_URL: Redis for the background job queue
- SYNC_EMAIL / SYNC_PASSWORD: Account used by unattended syncs (CLI, worker)
- CORS_ALLOW_ORIGINS: Comma-separated origins allowed to call the local API
"""

from typing import Optional, List
from functools import lru_cache

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings from environment variables"""

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Backend
    supabase_url: Optional[str] = None
    supabase_anon_key: Optional[str] = None
    supabase_service_key: Optional[str] = None
    storage_bucket: str = "documents"

    # Timeouts (seconds)
    sync_timeout: float = 30.0
    check_timeout: float = 5.0
    session_timeout: float = 10.0

    # Batching
    push_batch_size: int = Field(40, ge=1, le=200)
    restore_batch_size: int = Field(50, ge=1, le=200)
    page_size: int = 1000

    # Retention policy
    tombstone_retention_days: int = 30
    document_retention_hours: int = 48
    tombstone_grace_seconds: float = 2.0

    # Session refresh margin: refresh tokens that expire within this window
    session_refresh_margin: int = 60

    # Local storage
    database_url: str = "sqlite:///./casesync.db"
    blob_dir: str = "./blobs"

    # Background jobs
    redis_url: str = "redis://localhost:6379/0"

    # Unattended sync account
    sync_email: Optional[str] = None
    sync_password: Optional[SecretStr] = None

    # Local API
    cors_allow_origins: str = "http://localhost:3000,http://127.0.0.1:3000,app://casesync"

    service_version: str = "1.0.0"

    @property
    def cors_origins(self) -> List[str]:
        origins = []
        for item in self.cors_allow_origins.split(","):
            origin = item.strip().strip('"').strip("'").rstrip("/")
            if origin:
                origins.append(origin)
        return origins

    @property
    def is_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_anon_key)

    def validate_config(self) -> List[str]:
        """Validate backend configuration, return list of warnings"""
        warnings = []

        if not self.supabase_url:
            warnings.append("SUPABASE_URL not set - sync is disabled")
        elif not self.supabase_url.startswith(("http://", "https://")):
            warnings.append("SUPABASE_URL should start with http:// or https://")

        if self.supabase_url and not self.supabase_anon_key:
            warnings.append("SUPABASE_URL set but SUPABASE_ANON_KEY missing")

        if self.tombstone_retention_days < 1:
            warnings.append("TOMBSTONE_RETENTION_DAYS < 1: deletions will not propagate between devices")

        return warnings


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
