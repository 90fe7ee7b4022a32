from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    APP_NAME: str = "vcheck"
    VERSION: str = "1.0.0"
    DATABASE_URL: str = "sqlite:///./vcheck.db"
    SECRET_KEY: str = "vcheck-secret-key-change-me"
    DEBUG: bool = False

    # Check execution limits
    MAX_CONCURRENT_CHECKS_PER_HOST: int = 3
    MAX_CONCURRENT_HOSTS: int = 5
    DEFAULT_BATCH_CONCURRENCY: int = 5
    DEFAULT_TIMEOUT_SECONDS: int = 300
    MAX_TIMEOUT_SECONDS: int = 3600

    # Script backend
    POWERSHELL_PATH: str = "pwsh"
    POWERCLI_PROBE_TIMEOUT_SECONDS: int = 30

    # vCenter connectivity
    IGNORE_INVALID_CERTIFICATES: bool = True
    REST_REQUEST_TIMEOUT_SECONDS: float = 30.0

    # Result history
    RESULT_RETENTION_DAYS: int = 30
    MAX_RESULTS_PER_CHECK: int = 200

    # Notifications
    APPRISE_URL: Optional[str] = None
    NOTIFY_ON_FAILURE: bool = True
    NOTIFY_ON_SUCCESS: bool = False

    class Config:
        env_file = ".env"
        env_prefix = "VCHECK_"


@lru_cache()
def get_settings():
    return Settings()
