from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Remote document store (GitHub Gists)
    GIST_API_URL: str = "https://api.github.com/gists"
    GIST_ID: Optional[str] = None
    GITHUB_TOKEN: Optional[str] = None
    GIST_DATA_FILENAME: str = "audiobook-library.json"
    GIST_DESCRIPTION: str = "Audiobook Library Data"
    REQUEST_TIMEOUT_SECONDS: float = 10.0
    REMOTE_MAX_RETRIES: int = 3

    # Retry / backoff
    RETRY_MAX_RETRIES: int = 5
    RETRY_BASE_DELAY_SECONDS: float = 1.0
    RETRY_MAX_DELAY_SECONDS: float = 30.0

    # Local persistence
    STORAGE_BACKEND: str = "file"  # file, sqlite, memory
    STORAGE_PATH: str = "/data/shelfsync.json"
    CACHE_MAX_BYTES: int = 5 * 1024 * 1024
    CACHE_MAX_AGE_DAYS: int = 7
    APP_VERSION: str = "1.0.0"
    BUNDLED_DATA_PATH: Optional[str] = None

    # Offline queue
    QUEUE_MAX_SIZE: int = 100
    QUEUE_MAX_RETRIES_ADD: int = 3
    QUEUE_MAX_RETRIES_UPDATE: int = 3
    QUEUE_MAX_RETRIES_DELETE: int = 5
    QUEUE_MAX_RETRIES_SYNC: int = 5
    QUEUE_PROCESS_INTERVAL_SECONDS: int = 10

    # Sync Logic
    SYNC_INTERVAL_SECONDS: int = 30
    CONFLICT_RESOLUTION: str = "manual"  # manual, keep-local, keep-remote, merge
    CONFLICT_TIMEOUT_SECONDS: float = 300.0

    # System
    LOG_LEVEL: str = "INFO"
    HTTP_SERVER_ENABLED: bool = False
    HTTP_SERVER_PORT: int = 8080
    HTTP_SERVER_TOKEN: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    def queue_retry_ceilings(self) -> dict:
        return {
            "add": self.QUEUE_MAX_RETRIES_ADD,
            "update": self.QUEUE_MAX_RETRIES_UPDATE,
            "delete": self.QUEUE_MAX_RETRIES_DELETE,
            "sync": self.QUEUE_MAX_RETRIES_SYNC,
        }

settings = Settings()
