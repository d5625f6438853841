import os
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from relay.domain.models import EngineConfig


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    PROJECT_NAME: str = "Publish Relay"
    LOG_LEVEL: str = "INFO"

    # Storage
    RELAY_DIR: str = os.path.join(os.path.expanduser("~"), ".claude-relay")
    SQLALCHEMY_DATABASE_URI: Optional[str] = None

    # Scheduler
    SCHEDULER_CHECK_INTERVAL: int = 60000  # ms
    MAX_RETRIES: int = 3
    RETENTION_DAYS: int = 7
    RETENTION_CRON: str = "0 0 * * *"
    REMOVE_FILES_ON_SUCCESS: bool = True
    EXECUTOR_COMMAND: Optional[str] = None
    EXECUTOR_TIMEOUT_SECONDS: float = 600.0

    # OAuth callback server
    OAUTH_HOST: str = "127.0.0.1"
    OAUTH_PORT: int = 3000
    OAUTH_HTTP_TIMEOUT_SECONDS: float = 30.0

    YOUTUBE_CLIENT_ID: Optional[str] = None
    YOUTUBE_CLIENT_SECRET: Optional[str] = None
    YOUTUBE_REDIRECT_URI: Optional[str] = None

    FACEBOOK_APP_ID: Optional[str] = None
    FACEBOOK_APP_SECRET: Optional[str] = None
    FACEBOOK_REDIRECT_URI: Optional[str] = None

    TIKTOK_CLIENT_KEY: Optional[str] = None
    TIKTOK_CLIENT_SECRET: Optional[str] = None
    TIKTOK_REDIRECT_URI: Optional[str] = None

    @model_validator(mode="after")
    def _default_database_uri(self) -> "Settings":
        if not self.SQLALCHEMY_DATABASE_URI:
            db_path = os.path.join(self.RELAY_DIR, "social-media-agent.db")
            self.SQLALCHEMY_DATABASE_URI = f"sqlite+aiosqlite:///{db_path}"
        return self

    def engine_config(self) -> EngineConfig:
        return EngineConfig(
            poll_interval_ms=self.SCHEDULER_CHECK_INTERVAL,
            max_retries=self.MAX_RETRIES,
            retention_days=self.RETENTION_DAYS,
            remove_files_on_success=self.REMOVE_FILES_ON_SUCCESS,
        )


settings = Settings()
