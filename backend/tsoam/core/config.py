from pydantic_settings import BaseSettings
from typing import Dict, List, Optional


DEFAULT_MODULE_ENDPOINTS: Dict[str, str] = {
    "members": "members",
    "employees": "hr/employees",
    "transactions": "finance/transactions",
    "welfare": "welfare",
    "inventory": "inventory",
    "events": "events",
    "appointments": "appointments",
}


class Settings(BaseSettings):
    APP_NAME: str = "TSOAM Offline Sync"
    VERSION: str = "2.0.0"
    LOG_LEVEL: str = "INFO"

    # Remote church-management API
    API_BASE_URL: str = "http://localhost:3001/api"
    API_AUTH_TOKEN: Optional[str] = None
    REMOTE_TIMEOUT: float = 30.0
    MODULE_ENDPOINTS: Dict[str, str] = dict(DEFAULT_MODULE_ENDPOINTS)

    # Local durable store
    OFFLINE_STORE_BACKEND: str = "sqlite"  # "sqlite" or "memory"
    OFFLINE_DATABASE_URL: str = "sqlite:///./tsoam_offline.db"

    # Sync policy
    SYNC_INTERVAL_SECONDS: float = 300.0  # every 5 minutes while online
    MAX_RETRIES: int = 3
    STALE_OPERATION_HOURS: float = 24.0
    STALE_RETRY_THRESHOLD: int = 2

    # Connectivity probing
    CONNECTIVITY_PROBE_PATH: str = "health"
    CONNECTIVITY_CHECK_INTERVAL: float = 30.0

    # Modules whose listings are cached for offline reads at startup
    PREFETCH_MODULES: List[str] = []

    class Config:
        env_file = ".env"


settings = Settings()
