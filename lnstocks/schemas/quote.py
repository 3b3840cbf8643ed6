from typing import Literal

from pydantic import BaseModel

QuoteSource = Literal["upstream", "calculated_fallback", "error"]


class QuoteRecord(BaseModel):
    symbol: str
    price: float | None = None
    change: float | None = None
    change_pct: float | None = None
    previous_close: float | None = None
    time: int | None = None
    source: QuoteSource
    day_high: float | None = None
    day_low: float | None = None
    open: float | None = None
    currency: str | None = None

    @property
    def has_data(self) -> bool:
        return self.source != "error" and self.price is not None and self.price > 0


class CacheEntry(BaseModel):
    record: QuoteRecord
    captured_at: float

    def is_fresh(self, now: float, ttl_sec: float) -> bool:
        return now - self.captured_at < ttl_sec


class QuotePoint(BaseModel):
    t: int
    price: float
