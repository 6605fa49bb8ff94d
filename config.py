from __future__ import annotations
import os
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATA_DIR: Path = Path(os.getenv("DATA_DIR", "data"))
    UPLOADS_DIR: Path = Path(os.getenv("UPLOADS_DIR", "uploads"))
    UPLOADS_URL: str = "/uploads"

    ADMIN_USERNAME: str = "admin"
    # bcrypt hash; an empty value disables login
    ADMIN_PASSWORD_HASH: str = ""
    JWT_SECRET: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRY_MINUTES: int = 60

    LOCK_RETRIES: int = 10
    LOCK_RETRY_DELAY: float = 0.05
    LOCK_MAX_RETRY_DELAY: float = 1.0

    MAX_IMAGE_BYTES: int = 5 * 1024 * 1024
    CORS_ORIGINS: list[str] = ["*"]
    PORT: int = 8000


settings = Settings()
