import logging
import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        match_window_days: int,
        pending_max_days: int,
        confirmed_max_days: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.match_window_days = match_window_days
        self.pending_max_days = pending_max_days
        self.confirmed_max_days = confirmed_max_days
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("OFFSETS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("OFFSETS_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "offsets.db"
        database_url = f"sqlite:///{default_db}"
    timezone = os.getenv("OFFSETS_TIMEZONE", "UTC")
    match_window_days = int(os.getenv("OFFSETS_MATCH_WINDOW_DAYS", "30"))
    pending_max_days = int(os.getenv("OFFSETS_PENDING_MAX_DAYS", "30"))
    confirmed_max_days = int(os.getenv("OFFSETS_CONFIRMED_MAX_DAYS", "365"))
    log_level = os.getenv("OFFSETS_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        match_window_days=match_window_days,
        pending_max_days=pending_max_days,
        confirmed_max_days=confirmed_max_days,
        log_level=log_level,
    )


def configure_logging() -> None:
    logging.basicConfig(level=get_settings().log_level)
