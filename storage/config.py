"""
storage/config.py

Centralised settings for the ADR review engine, loaded from environment
variables (or a ``.env`` file at the project root).

Variables
---------
DB_PATH              SQLite file backing the report store.
APP_DATA_KEY         Fernet key used to encrypt report documents at rest.
LOG_LEVEL            Root logging level for entry points.
STATS_WINDOW_DAYS    Trailing window used by the dashboard ``this_week`` count.
DEFAULT_PAGE_SIZE    Page size used when callers do not pass one.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

_PROJECT_ROOT = Path(__file__).resolve().parents[1]
ENV_FILE = _PROJECT_ROOT / ".env"


class Settings(BaseSettings):
    """Application settings."""

    db_path: Path = _PROJECT_ROOT / "data" / "adr_reports.db"
    app_data_key: str = ""

    log_level: str = "INFO"

    stats_window_days: int = 7
    default_page_size: int = 20

    model_config = {
        "env_file": str(ENV_FILE),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    return Settings()
