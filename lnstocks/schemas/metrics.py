from typing import Literal

from pydantic import BaseModel

MetricsSource = Literal["computed", "fundamentals_only", "estimated"]


class Fundamentals(BaseModel):
    market_cap: float | None = None
    shares_outstanding: float | None = None
    week52_high: float | None = None
    week52_low: float | None = None
    volume: float | None = None

    @property
    def usable(self) -> bool:
        return any(
            v is not None
            for v in (self.market_cap, self.week52_high, self.week52_low, self.volume)
        )


class MetricsRecord(BaseModel):
    symbol: str
    volume: float | None = None
    market_cap: float | None = None
    week52_high: float | None = None
    week52_low: float | None = None
    source: MetricsSource

    @property
    def is_empty(self) -> bool:
        return all(
            v is None
            for v in (self.volume, self.market_cap, self.week52_high, self.week52_low)
        )
