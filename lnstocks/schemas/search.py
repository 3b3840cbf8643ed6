from typing import Literal

from pydantic import BaseModel, ConfigDict

IndexState = Literal["uninitialized", "building", "ready"]


class SearchDocument(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    name: str
    type: str
    market: str = "stocks"
    active: bool = True
    primary_exchange: str = ""


class IndexStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_initialized: bool = False
    state: IndexState = "uninitialized"
    document_count: int = 0
    last_build_started_at: float | None = None
    last_build_completed_at: float | None = None
    last_build_duration_ms: float | None = None
    last_build_error: str | None = None
    build_count: int = 0
    skipped_builds: int = 0


class SearchResponse(BaseModel):
    query: str
    results: list[SearchDocument]
    count: int
