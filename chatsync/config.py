from functools import lru_cache
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Environment-driven settings shared by the ingestion service and the sync client.

    Server values (database, abuse limits, edit window) are read by the API
    process. The SYNC_* and INGESTION_* values configure a client process
    embedding the sync engine. Environment variables override `.env`.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Server store
    DATABASE_URL: str = "sqlite:///./chatsync.db"
    LOG_LEVEL: str = "INFO"

    # Abuse limits, per user and operation class
    SEND_RATE_LIMIT_PER_MINUTE: int = 30
    REACTION_RATE_LIMIT_PER_MINUTE: int = 10
    RATE_LIMIT_WINDOW_SECONDS: int = 60

    # Message mutation rules
    EDIT_WINDOW_SECONDS: int = 15 * 60
    MAX_EMOJIS_PER_MESSAGE: int = 12

    # Client sync engine
    LOCAL_DATABASE_URL: str = "sqlite:///./chatsync_local.db"
    INGESTION_BASE_URL: str = "http://localhost:8000"
    INGESTION_TIMEOUT_SECONDS: float = 10.0
    SYNC_INTERVAL_SECONDS: float = 30.0
    SYNC_BACKOFF_BASE_SECONDS: float = 2.0
    SYNC_BACKOFF_CAP_SECONDS: float = 60.0
    SYNC_MAX_RETRIES: int = 5
    SYNC_BATCH_SIZE: int = 50

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return level


@lru_cache()
def get_settings() -> Settings:
    """Settings are read once per process."""
    return Settings()


settings = get_settings()
