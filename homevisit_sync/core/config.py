from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    APP_NAME: str = "Home Visit Sync"
    VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str = "sqlite:///./homevisit_sync.db"

    # Remote authority (credentials are injected, never stored here)
    API_BASE_URL: Optional[str] = None
    API_TOKEN: Optional[str] = None
    REMOTE_TIMEOUT: float = 15.0
    CONNECTIVITY_CHECK_URL: Optional[str] = None  # Falls back to API_BASE_URL

    # Ids minted on-device start with this prefix until the server issues one
    LOCAL_ID_PREFIX: str = "local_"

    # Periodic sync intervals
    VISIT_SYNC_INTERVAL_MINUTES: int = 15
    PROTOCOL_SYNC_INTERVAL_MINUTES: int = 15
    PATIENT_SYNC_INTERVAL_MINUTES: int = 30  # Patients change less often

    # Power constraints for periodic runs
    SYNC_REQUIRE_BATTERY_NOT_LOW: bool = True
    BATTERY_LOW_THRESHOLD: int = 15  # percent

    # Early-retry backoff after partial/failed runs
    RETRY_BASE_DELAY_SECONDS: float = 30.0
    RETRY_MAX_DELAY_SECONDS: float = 900.0

    SYNC_WORKERS: int = 3

    # Cache demo templates/patient/visit on startup
    SEED_DEMO_DATA: bool = False

    class Config:
        env_file = ".env"


settings = Settings()
