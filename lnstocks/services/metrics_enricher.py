from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

from lnstocks.schemas.metrics import Fundamentals, MetricsRecord
from lnstocks.schemas.quote import QuoteRecord
from lnstocks.services.quote_cache import QuoteCache, normalize_symbol, unique_symbols

logger = logging.getLogger(__name__)


class MetricsEnricher:
    """Volume, market cap and 52-week range per symbol.

    Ladder: upstream fundamentals combined with the cached quote
    (``computed``), fundamentals alone (``fundamentals_only``), then a range
    estimated from the quote cache's recent points (``estimated``). Symbols
    with nothing derivable are left out of the result.
    """

    def __init__(self, *, quote_cache: QuoteCache, upstream, max_workers: int = 8) -> None:
        self.quote_cache = quote_cache
        self.upstream = upstream
        self.max_workers = max_workers

    def get(self, symbols: list[str]) -> dict[str, MetricsRecord]:
        keys = unique_symbols(symbols)
        if not keys:
            return {}

        workers = min(self.max_workers, len(keys))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="metrics-fetch") as pool:
            records = list(pool.map(self._get_isolated, keys))

        return {key: record for key, record in zip(keys, records) if record is not None}

    def _get_isolated(self, symbol: str) -> MetricsRecord | None:
        try:
            return self.get_one(symbol)
        except Exception:
            logger.exception("[METRICS][get_failed] symbol=%s", symbol)
            return None

    def get_one(self, symbol: str) -> MetricsRecord | None:
        key = normalize_symbol(symbol)
        if not key:
            return None

        quote = self.quote_cache.get(key)
        fundamentals = self._fetch_fundamentals(key)

        # a share count alone is enough once there is a price to multiply
        derivable = fundamentals is not None and (
            fundamentals.usable or (quote.has_data and bool(fundamentals.shares_outstanding))
        )
        if derivable:
            if quote.has_data:
                record = self._computed(key, quote, fundamentals)
            else:
                record = MetricsRecord(
                    symbol=key,
                    volume=fundamentals.volume,
                    market_cap=fundamentals.market_cap,
                    week52_high=fundamentals.week52_high,
                    week52_low=fundamentals.week52_low,
                    source="fundamentals_only",
                )
        else:
            record = self._estimated(key)

        if record is None or record.is_empty:
            logger.info("[METRICS][omitted] symbol=%s quote_source=%s", key, quote.source)
            return None
        return record

    def _fetch_fundamentals(self, key: str) -> Fundamentals | None:
        try:
            return self.upstream.fetch_fundamentals(key)
        except Exception as exc:
            logger.warning("[METRICS][fundamentals_failed] symbol=%s error=%s", key, exc)
            return None

    def _computed(self, key: str, quote: QuoteRecord, fundamentals: Fundamentals) -> MetricsRecord:
        price = float(quote.price)

        market_cap = fundamentals.market_cap
        if fundamentals.shares_outstanding:
            market_cap = round(fundamentals.shares_outstanding * price, 2)

        high, low = fundamentals.week52_high, fundamentals.week52_low
        if high is None and low is None:
            observed = self.quote_cache.price_range(key)
            if observed is not None:
                low, high = observed
        # the live price is part of the trailing 52 weeks
        if high is not None:
            high = max(high, price)
        if low is not None:
            low = min(low, price)

        return MetricsRecord(
            symbol=key,
            volume=fundamentals.volume,
            market_cap=market_cap,
            week52_high=high,
            week52_low=low,
            source="computed",
        )

    def _estimated(self, key: str) -> MetricsRecord | None:
        observed = self.quote_cache.price_range(key)
        if observed is None:
            return None
        low, high = observed
        return MetricsRecord(symbol=key, week52_high=high, week52_low=low, source="estimated")
