import os
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field

_ENV_KEYS = (
    "FINNHUB_KEY",
    "FINNHUB_BASE_URL",
    "QUOTE_TTL_SEC",
    "QUOTE_HISTORY_POINTS",
    "INDEX_REBUILD_INTERVAL_SEC",
    "SEARCH_RESULT_CAP",
    "UPSTREAM_TIMEOUT_SEC",
    "UPSTREAM_RETRY_ATTEMPTS",
    "UPSTREAM_BACKOFF_BASE_SEC",
    "INDEX_EXCHANGE",
    "MAX_SYMBOLS_PER_REQUEST",
    "LOG_LEVEL",
)


class Settings(BaseModel):
    FINNHUB_KEY: str = ""
    FINNHUB_BASE_URL: str = "https://finnhub.io/api/v1"
    QUOTE_TTL_SEC: float = Field(default=30.0, gt=0)
    QUOTE_HISTORY_POINTS: int = Field(default=390, ge=1)
    INDEX_REBUILD_INTERVAL_SEC: float = Field(default=3600.0, gt=0)
    SEARCH_RESULT_CAP: int = Field(default=20, ge=1)
    UPSTREAM_TIMEOUT_SEC: float = Field(default=5.0, gt=0)
    UPSTREAM_RETRY_ATTEMPTS: int = Field(default=2, ge=1)
    UPSTREAM_BACKOFF_BASE_SEC: float = Field(default=0.25, ge=0)
    INDEX_EXCHANGE: str = "US"
    MAX_SYMBOLS_PER_REQUEST: int = Field(default=30, ge=1)
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @property
    def has_upstream_key(self) -> bool:
        return bool(self.FINNHUB_KEY.strip())

    @property
    def upstream_call_budget_sec(self) -> float:
        # connect and read timeouts apply separately per attempt
        attempts = self.UPSTREAM_RETRY_ATTEMPTS
        backoff = sum(self.UPSTREAM_BACKOFF_BASE_SEC * (2 ** i) for i in range(attempts - 1))
        return 2 * self.UPSTREAM_TIMEOUT_SEC * attempts + backoff

    @classmethod
    def from_env(cls) -> "Settings":
        raw = {key: os.getenv(key) for key in _ENV_KEYS}
        values = {key: value.strip() for key, value in raw.items() if value is not None and value.strip()}
        if "LOG_LEVEL" in values:
            values["LOG_LEVEL"] = values["LOG_LEVEL"].upper()
        return cls.model_validate(values)


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
