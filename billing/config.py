"""Application configuration"""

import os
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings"""

    # Application
    APP_NAME: str = "BillingSyncPortal"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = os.getenv("DEBUG", "False").lower() == "true"
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")

    # API
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))

    # Primary invoicing service (system of record)
    INVOICING_API_BASE_URL: Optional[str] = os.getenv("INVOICING_API_BASE_URL")
    INVOICING_API_KEY: Optional[str] = os.getenv("INVOICING_API_KEY")
    INVOICING_TIMEOUT_SECONDS: float = float(os.getenv("INVOICING_TIMEOUT_SECONDS", "30"))
    INVOICING_MAX_RETRIES: int = int(os.getenv("INVOICING_MAX_RETRIES", "2"))
    INVOICING_RETRY_DELAY_SECONDS: float = float(os.getenv("INVOICING_RETRY_DELAY_SECONDS", "2.0"))

    # Legacy backend (cookie session)
    LEGACY_BASE_URL: Optional[str] = os.getenv("LEGACY_BASE_URL")
    LEGACY_USERNAME: Optional[str] = os.getenv("LEGACY_USERNAME")
    LEGACY_PASSWORD: Optional[str] = os.getenv("LEGACY_PASSWORD")
    LEGACY_SESSION_COOKIE: Optional[str] = os.getenv("LEGACY_SESSION_COOKIE")  # e.g. "PHPSESSID=abc123"
    LEGACY_TIMEOUT_SECONDS: float = float(os.getenv("LEGACY_TIMEOUT_SECONDS", "30"))

    # Invoice actions
    DEFAULT_CANCEL_REASON: str = os.getenv("DEFAULT_CANCEL_REASON", "Cancelado via portal")
    BATCH_ACTION_DELAY_SECONDS: float = float(os.getenv("BATCH_ACTION_DELAY_SECONDS", "1.1"))
    BATCH_RETENTION_SECONDS: float = float(os.getenv("BATCH_RETENTION_SECONDS", "3600"))
    BATCH_MAX_FINISHED: int = int(os.getenv("BATCH_MAX_FINISHED", "100"))

    # Fetch / enrichment
    ENRICH_CONCURRENCY: int = max(1, int(os.getenv("ENRICH_CONCURRENCY", "4")))
    UPSTREAM_PAGE_SIZE: int = int(os.getenv("UPSTREAM_PAGE_SIZE", "40"))
    RANGE_MAX_DEPTH: int = int(os.getenv("RANGE_MAX_DEPTH", "20"))
    SYNC_MAX_PAGES: int = int(os.getenv("SYNC_MAX_PAGES", "500"))

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./billing_portal.db")
    UPSERT_MODE: str = os.getenv("UPSERT_MODE", "overwrite")  # overwrite | coalesce
    LIST_LIMIT: int = int(os.getenv("LIST_LIMIT", "10000"))

    # Payment reconciliation
    PAY_MATCH_TOLERANCE: float = float(os.getenv("PAY_MATCH_TOLERANCE", "0.05"))
    PAY_FROM_FILE_LOCAL_FALLBACK: bool = os.getenv("PAY_FROM_FILE_LOCAL_FALLBACK", "True").lower() == "true"

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE: Optional[str] = os.getenv("LOG_FILE")

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


# Global settings instance
settings = Settings()
