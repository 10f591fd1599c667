from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Persistence
    STATE_PATH: str = "/data/userdata_state.json"
    PERSIST_ENABLED: bool = True

    # Sync Logic
    SYNC_INTERVAL_SECONDS: int = 900  # periodic safety net
    SYNC_SIGNAL_QUEUE_SIZE: int = 64
    SYNC_FETCH_BEFORE_PUSH: bool = True
    SYNC_VALIDATE_SESSION: bool = True
    DIRTY_AGE_WARNING_SECONDS: int = 86400  # 24h

    # Work queue
    WORK_RETRY_BACKOFF_SECONDS: int = 30
    WORK_MAX_BACKOFF_SECONDS: int = 18000  # 5h

    # Connectivity
    CONNECTIVITY_CHECK_INTERVAL_SECONDS: int = 30
    CONNECTIVITY_ASSUME_ONLINE: bool = True

    # Media server client
    CLIENT_NAME: str = "userdata-sync"
    CLIENT_VERSION: str = "0.1.0"
    DEVICE_NAME: str = "userdata-sync"
    DEVICE_ID: str = "userdata-sync-device"
    REQUEST_TIMEOUT_SECONDS: int = 30

    # System
    LOG_LEVEL: str = "INFO"
    DRY_RUN: bool = False
    HTTP_SERVER_ENABLED: bool = False
    HTTP_SERVER_PORT: int = 8080
    HTTP_SERVER_TOKEN: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

settings = Settings()
