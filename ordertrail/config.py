"""Application settings loaded from the environment."""
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ORDERTRAIL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # PostgreSQL in production, SQLite locally
    database_url: str = "sqlite:///./ordertrail.db"

    audit_max_entries: int = 10000
    audit_storage_key: str = "serviceOrderAuditData"

    # Upper bound for the remote stage-move write; None leaves it to the transport
    persist_timeout_seconds: Optional[float] = None

    service_order_list_key: str = "service-orders"

    log_level: str = "INFO"
    cors_origins: str = "*"

    @property
    def sqlalchemy_database_url(self) -> str:
        # Render/Heroku hand out postgres:// but SQLAlchemy needs postgresql://
        if self.database_url.startswith("postgres://"):
            return self.database_url.replace("postgres://", "postgresql://", 1)
        return self.database_url


settings = Settings()
