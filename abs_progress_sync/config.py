from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Audiobookshelf
    ABS_BASE_URL: str = "http://localhost:13378"
    ABS_TOKEN: str = ""

    # Network
    DEBUG: bool = False
    REQUEST_TIMEOUT_SECONDS: Optional[float] = None  # None -> 3s in DEBUG, 7s otherwise

    # Retry policy
    SYNC_MAX_RETRIES: int = 3
    SYNC_BASE_DELAY_MS: int = 1000

    # Persistence
    STATE_PATH: str = "/data/progress.json"
    PERSIST_ENABLED: bool = True

    # Sync loop
    SYNC_INTERVAL_SECONDS: int = 120
    RUN_ONCE: bool = False
    SHOW_ERROR_NOTIFICATIONS: bool = True

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

    @property
    def request_timeout(self) -> float:
        if self.REQUEST_TIMEOUT_SECONDS is not None:
            return self.REQUEST_TIMEOUT_SECONDS
        return 3.0 if self.DEBUG else 7.0

settings = Settings()
