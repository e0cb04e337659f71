from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./syncengine.db"
    admin_roles: List[str] = ["owner", "director", "sysadmin"]

    # Backoff for external adapter calls
    retry_max_retries: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 30000

    record_concurrency: int = 1  # per-record adapter calls in flight per mapping
    status_history_limit: int = 100
    token_expiry_buffer_seconds: int = 0

    scheduled_sync_hour: int = 2
    scheduler_role: str = "sysadmin"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
