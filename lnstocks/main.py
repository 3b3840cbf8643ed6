from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI

from lnstocks.api.routes import router
from lnstocks.config.settings import Settings, get_settings
from lnstocks.errors import UpstreamUnavailableError
from lnstocks.integrations.finnhub_rest import FinnhubRestClient
from lnstocks.schemas.metrics import Fundamentals
from lnstocks.schemas.quote import QuoteRecord
from lnstocks.schemas.search import SearchDocument
from lnstocks.services.index_scheduler import IndexRebuildScheduler
from lnstocks.services.metrics_enricher import MetricsEnricher
from lnstocks.services.quote_cache import QuoteCache
from lnstocks.services.symbol_index import SymbolSearchIndex

_DEMO_UNIVERSE = (
    ("AAPL", "Apple Inc", "Common Stock", "XNAS"),
    ("MSFT", "Microsoft Corp", "Common Stock", "XNAS"),
    ("GOOGL", "Alphabet Inc Class A", "Common Stock", "XNAS"),
    ("AMZN", "Amazon.com Inc", "Common Stock", "XNAS"),
    ("META", "Meta Platforms Inc", "Common Stock", "XNAS"),
    ("NVDA", "NVIDIA Corp", "Common Stock", "XNAS"),
    ("TSLA", "Tesla Inc", "Common Stock", "XNAS"),
    ("NFLX", "Netflix Inc", "Common Stock", "XNAS"),
    ("AMD", "Advanced Micro Devices Inc", "Common Stock", "XNAS"),
    ("JPM", "JPMorgan Chase & Co", "Common Stock", "XNYS"),
    ("V", "Visa Inc", "Common Stock", "XNYS"),
    ("KO", "Coca-Cola Co", "Common Stock", "XNYS"),
    ("DIS", "Walt Disney Co", "Common Stock", "XNYS"),
    ("VOO", "Vanguard S&P 500 ETF", "ETP", "ARCX"),
    ("SPY", "SPDR S&P 500 ETF Trust", "ETP", "ARCX"),
    ("QQQ", "Invesco QQQ Trust", "ETP", "XNAS"),
)


class _DemoUpstreamClient:
    """Offline upstream used when FINNHUB_KEY is not configured."""

    def fetch_quote(self, symbol: str) -> QuoteRecord:
        base = 50 + (ord(symbol[0]) * 7) % 800
        price = round(base * 1.004, 2)
        change = round(price - base, 2)
        return QuoteRecord(
            symbol=symbol,
            price=price,
            change=change,
            change_pct=round(change / base * 100, 4),
            previous_close=float(base),
            time=int(time.time()),
            source="upstream",
            currency="USD",
        )

    def fetch_fundamentals(self, symbol: str) -> Fundamentals:
        raise UpstreamUnavailableError("demo upstream has no fundamentals")

    def fetch_symbol_universe(self) -> list[SearchDocument]:
        return [
            SearchDocument(symbol=s, name=name, type=kind, market="stocks", primary_exchange=mic)
            for s, name, kind, mic in _DEMO_UNIVERSE
        ]


def build_upstream(settings: Settings):
    if not settings.has_upstream_key:
        return _DemoUpstreamClient()
    return FinnhubRestClient(
        api_key=settings.FINNHUB_KEY,
        base_url=settings.FINNHUB_BASE_URL,
        timeout_sec=settings.UPSTREAM_TIMEOUT_SEC,
        retry_attempts=settings.UPSTREAM_RETRY_ATTEMPTS,
        backoff_base_sec=settings.UPSTREAM_BACKOFF_BASE_SEC,
        exchange=settings.INDEX_EXCHANGE,
    )


def create_app(
    settings: Settings | None = None,
    upstream=None,
    *,
    start_scheduler: bool = True,
) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    upstream = upstream or build_upstream(settings)

    wait_timeout_sec = settings.upstream_call_budget_sec

    quote_cache = QuoteCache(
        upstream=upstream,
        ttl_sec=settings.QUOTE_TTL_SEC,
        history_size=settings.QUOTE_HISTORY_POINTS,
        wait_timeout_sec=wait_timeout_sec,
    )
    symbol_index = SymbolSearchIndex(upstream=upstream, result_cap=settings.SEARCH_RESULT_CAP)
    scheduler = IndexRebuildScheduler(
        index=symbol_index,
        interval_sec=settings.INDEX_REBUILD_INTERVAL_SEC,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_scheduler:
            app.state.index_scheduler.start()
        try:
            yield
        finally:
            app.state.index_scheduler.stop()

    app = FastAPI(title="LN Stocks API", version="1.0.0", lifespan=lifespan)
    app.include_router(router, prefix="/v1")

    app.state.settings = settings
    app.state.upstream = upstream
    app.state.quote_cache = quote_cache
    app.state.metrics_enricher = MetricsEnricher(quote_cache=quote_cache, upstream=upstream)
    app.state.symbol_index = symbol_index
    app.state.index_scheduler = scheduler
    return app


app = create_app()
