from pydantic_settings import BaseSettings
from typing import List, Optional


DEFAULT_COLLECTIONS = ["Photo", "Diary", "Message", "Anniversary", "Setting"]


class Settings(BaseSettings):
    APP_NAME: str = "LoveSite Sync"
    VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    # Remote document store (LeanCloud-style REST API)
    REMOTE_APP_ID: Optional[str] = None
    REMOTE_APP_KEY: Optional[str] = None
    REMOTE_SERVER_URL: str = "https://leancloud.cn"
    REMOTE_TIMEOUT: int = 10
    REMOTE_READY_TIMEOUT: int = 10
    REMOTE_MOCK_MODE: bool = True  # Use the in-process store when no remote is configured
    REMOTE_POLL_INTERVAL_SECONDS: int = 30

    COLLECTIONS: List[str] = DEFAULT_COLLECTIONS

    # Local snapshot mirror
    LOCAL_STORE_URL: str = "sqlite:///./lovesite.db"
    LOCAL_STORE_KEY_PREFIX: str = "loveSite"

    # Sync policy
    SYNC_INTERVAL_SECONDS: int = 300
    SYNC_RETRY_MAX_ATTEMPTS: int = 3
    SYNC_RETRY_DELAY_SECONDS: float = 3.0
    DRAIN_RETRY_BASE_SECONDS: float = 3.0
    DRAIN_RETRY_MAX_SECONDS: float = 300.0
    PENDING_STALE_HOURS: int = 24  # Failed writes older than this are dropped after one more attempt

    SEED_DEMO_DATA: bool = False

    class Config:
        env_file = ".env"

    def missing_remote_credentials(self) -> List[str]:
        """Names of the credential settings a real remote needs but lacks."""
        if self.REMOTE_MOCK_MODE:
            return []
        missing = []
        if not self.REMOTE_APP_ID:
            missing.append("REMOTE_APP_ID")
        if not self.REMOTE_APP_KEY:
            missing.append("REMOTE_APP_KEY")
        if not self.REMOTE_SERVER_URL:
            missing.append("REMOTE_SERVER_URL")
        return missing


settings = Settings()
