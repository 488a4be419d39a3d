"""Configuration management."""

from typing import Literal
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import computed_field


class Settings(BaseSettings):
    """Application settings."""

    # Database (PostgreSQL) - constructed from parts
    db_host: str = "localhost"
    db_port: str = "5432"
    db_name: str = "resultspro"
    db_user: str = "resultspro"
    db_password: str = ""
    db_pool_min_size: int = 2
    db_pool_max_size: int = 10

    # "memory" keeps everything in-process (tests, local demos)
    database_backend: Literal["postgres", "memory"] = "postgres"

    @computed_field
    @property
    def database_url(self) -> str:
        """Construct database URL from parts."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # Paging
    default_page_size: int = 20
    max_page_size: int = 100

    # Real-time events
    sse_heartbeat_interval: int = 30
    sse_queue_size: int = 100

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


# Global settings instance
settings = Settings()
