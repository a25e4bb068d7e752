from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


def _as_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _as_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    return float(value)


@dataclass
class Settings:
    db_path: Path

    hh_api_url: str
    hh_user_agent: str
    request_timeout_seconds: int
    search_page_size: int

    retry_max_attempts: int
    retry_base_delay_seconds: float
    group_delay_seconds: float

    log_level: str


def load_settings() -> Settings:
    load_dotenv(override=False)

    return Settings(
        db_path=Path(os.getenv("DB_PATH", "state/tracker.sqlite")),
        hh_api_url=os.getenv("HH_API_URL", "https://api.hh.ru/vacancies"),
        hh_user_agent=os.getenv("HH_USER_AGENT", "analyzer-script/1.0"),
        request_timeout_seconds=_as_int(os.getenv("REQUEST_TIMEOUT_SECONDS"), 20),
        search_page_size=_as_int(os.getenv("SEARCH_PAGE_SIZE"), 100),
        retry_max_attempts=_as_int(os.getenv("RETRY_MAX_ATTEMPTS"), 5),
        retry_base_delay_seconds=_as_float(os.getenv("RETRY_BASE_DELAY_SECONDS"), 2.0),
        group_delay_seconds=_as_float(os.getenv("GROUP_DELAY_SECONDS"), 0.5),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
