"""Application configuration."""

import os
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

_ENVIRONMENT = os.getenv("ENVIRONMENT", "local")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    admin_token: str
    data_dir: Path = Path("data")
    supplements_file: str = "supplements.json"
    backup_dir: Path | None = None
    max_backups: int = 10
    category_confidence_threshold: float = 0.8
    default_currency: str = "SEK"
    log_level: str = "INFO"
    environment: str = _ENVIRONMENT

    model_config = SettingsConfigDict(
        env_file=(f".env.{_ENVIRONMENT}", ".env"),
        extra="ignore",
    )

    @property
    def supplements_path(self) -> Path:
        """Return the location of the record container."""
        return self.data_dir / self.supplements_file

    @property
    def backups_path(self) -> Path:
        """Return the directory holding container backups."""
        return self.backup_dir or self.data_dir / "backups"
