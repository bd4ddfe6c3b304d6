from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"
    log_level: str = "INFO"

    database_url: str = "sqlite+aiosqlite:///./receipts.db"

    staging_dir: Path = Path("uploads")
    storage_root: Path = Path("receipts")
    # Staged-but-unprocessed files are lost on restart when enabled.
    purge_staging_on_startup: bool = False
    max_upload_bytes: int = 20 * 1024 * 1024

    gemini_api_key: str | None = None
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    gemini_model: str = "gemini-2.0-flash"
    gemini_timeout_seconds: float | None = None

    invalid_reason_max_chars: int = 200


settings = Settings()
