from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Values in the environment take precedence over the .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./roomchat.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Blob storage: uploaded files live under BLOB_STORAGE_DIR and are
    # served back under BLOB_BASE_URL
    BLOB_STORAGE_DIR: str = "./blobs"
    BLOB_BASE_URL: str = "/blobs"
    MAX_UPLOAD_BYTES: int = 100 * 1024 * 1024

    # Expiry sweeper
    SWEEP_ENABLED: bool = True
    SWEEP_INTERVAL_SECONDS: float = 60 * 60

    # Lifetime of a newly created room in hours; 0 disables room expiry
    ROOM_TTL_HOURS: float = 0

    # CORS
    CLIENT_ORIGINS: list[str] = ["http://localhost:3000"]


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
