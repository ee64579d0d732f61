from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field


def _resolve_data_dir() -> Path:
    override = os.getenv("ESG_DATA_DIR", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path(__file__).parent / "data"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class Settings(BaseModel):
    data_dir: Path = Field(default_factory=_resolve_data_dir)
    database_path: Path = Field(
        default_factory=lambda: Path(os.getenv("ESG_DB_PATH", "").strip() or _resolve_data_dir() / "esg-agent.db")
    )
    uploads_dir: Path = Field(default_factory=lambda: _resolve_data_dir() / "uploads")

    storage_api_url: str = Field(default_factory=lambda: os.getenv("STORAGE_API_URL", "").strip())
    storage_api_key: str = Field(default_factory=lambda: os.getenv("STORAGE_API_KEY", "").strip())

    # Seconds; 0 disables the watchdog on background analysis runs.
    analysis_timeout_seconds: float = Field(default_factory=lambda: _env_float("ESG_ANALYSIS_TIMEOUT", 600.0))

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.uploads_dir.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.ensure_directories()
    return settings
