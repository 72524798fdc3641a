from datetime import date
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application settings
    APP_NAME: str = "Attendance Sync"
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None
    HOST: str = "127.0.0.1"
    PORT: int = 8000

    # Database settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./attendance_sync.db"
    DATABASE_ECHO: bool = False

    # Aeries SIS API settings
    AERIES_API_BASE_URL: str = "https://localhost/admin/api/v5"
    AERIES_API_KEY: str = ""
    AERIES_DISTRICT_CODE: str = ""
    AERIES_CERTIFICATE_PATH: str = ""
    AERIES_PRIVATE_KEY_PATH: str = ""
    AERIES_CA_CERT_PATH: str = ""
    AERIES_REQUEST_TIMEOUT_SECONDS: float = 30.0
    AERIES_PAGE_SIZE: int = 500
    AERIES_RATE_LIMIT_PER_MINUTE: int = 60
    AERIES_RATE_LIMIT_JITTER_SECONDS: float = 0.25

    # Sync run defaults (2024-2025 school year)
    SYNC_START_DATE: date = date(2024, 8, 15)
    SYNC_END_DATE: date = date(2025, 6, 12)
    SYNC_BATCH_SIZE: int = 500
    SYNC_CHUNK_DAYS: int = 30
    SYNC_CHECKPOINT_EVERY: int = 10

    # Retry settings
    SYNC_RETRY_MAX_ATTEMPTS: int = 3
    SYNC_RETRY_BASE_DELAY_SECONDS: float = 1.0
    SYNC_RETRY_MAX_DELAY_SECONDS: float = 30.0
    SYNC_RETRY_JITTER_SECONDS: float = 0.5

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    @field_validator("DATABASE_URL")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        return v

    @field_validator("AERIES_RATE_LIMIT_PER_MINUTE")
    @classmethod
    def validate_rate_limit(cls, v):
        if not 1 <= v <= 300:
            raise ValueError("AERIES_RATE_LIMIT_PER_MINUTE must be between 1 and 300")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v):
        return v.upper()


settings = Settings()
