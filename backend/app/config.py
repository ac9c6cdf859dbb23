from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_SQLITE_PATH = BASE_DIR / "data" / "app.db"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database_url: str = Field(
        default=f"sqlite:///{DEFAULT_SQLITE_PATH}",
        validation_alias="DATABASE_URL",
    )
    auth_secret_key: str = Field(
        default="change-me",
        validation_alias="AUTH_SECRET_KEY",
    )
    auth_access_token_expire_minutes: int = Field(
        default=60,
        validation_alias="AUTH_ACCESS_TOKEN_EXPIRE_MINUTES",
    )
    auth_refresh_token_expire_days: int = Field(
        default=7,
        validation_alias="AUTH_REFRESH_TOKEN_EXPIRE_DAYS",
    )
    default_admin_email: str = Field(
        default="admin@example.com",
        validation_alias="DEFAULT_ADMIN_EMAIL",
    )
    default_admin_password: str = Field(
        default="admin123",
        validation_alias="DEFAULT_ADMIN_PASSWORD",
    )
    max_upload_size_bytes: int = Field(
        default=10 * 1024 * 1024,
        validation_alias="MAX_UPLOAD_SIZE_BYTES",
    )
    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
    )
    backend_cors_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173",
        validation_alias="BACKEND_CORS_ORIGINS",
    )

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.backend_cors_origins.split(",") if origin.strip()]


settings = Settings()
