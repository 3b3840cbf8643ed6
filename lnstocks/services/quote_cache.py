from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable

from lnstocks.errors import NoDataAvailableError, UpstreamDataInvalidError
from lnstocks.schemas.quote import CacheEntry, QuotePoint, QuoteRecord

logger = logging.getLogger(__name__)


def normalize_symbol(symbol: str) -> str:
    return str(symbol or "").strip().upper()


def unique_symbols(symbols: Iterable[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for symbol in symbols:
        value = normalize_symbol(symbol)
        if not value or value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


class _Flight:
    """One in-progress upstream fetch; waiters block on ``done``."""

    def __init__(self) -> None:
        self.done = threading.Event()
        self.record: QuoteRecord | None = None


class QuoteCache:
    """TTL-bounded quote cache in front of an unreliable upstream.

    Fresh entries are served without touching the upstream. Concurrent misses
    for one symbol share a single upstream call. Upstream failures degrade to
    a flat-hold ``calculated_fallback`` built from the last good record, or to
    an ``error`` record when the symbol has never been fetched successfully.
    """

    def __init__(
        self,
        *,
        upstream,
        ttl_sec: float = 30.0,
        history_size: int = 390,
        wait_timeout_sec: float = 30.0,
        max_workers: int = 8,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.upstream = upstream
        self.ttl_sec = ttl_sec
        self.history_size = history_size
        self.wait_timeout_sec = wait_timeout_sec
        self.max_workers = max_workers
        self._clock = clock

        # guards every dict below; never held across an upstream call
        self._lock = threading.Lock()
        self._entries: dict[str, CacheEntry] = {}
        self._last_good: dict[str, QuoteRecord] = {}
        self._history: dict[str, deque[QuotePoint]] = {}
        self._flights: dict[str, _Flight] = {}
        self._counters = {
            "hits": 0,
            "misses": 0,
            "coalesced_waits": 0,
            "upstream_calls": 0,
            "upstream_failures": 0,
            "fallbacks": 0,
            "errors": 0,
        }

    def get(self, symbol: str) -> QuoteRecord:
        key = normalize_symbol(symbol)
        if not key:
            return QuoteRecord(symbol=key, source="error")

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.is_fresh(self._clock(), self.ttl_sec):
                self._counters["hits"] += 1
                return entry.record

            flight = self._flights.get(key)
            leader = flight is None
            if leader:
                flight = _Flight()
                self._flights[key] = flight
                self._counters["misses"] += 1
            else:
                self._counters["coalesced_waits"] += 1

        if leader:
            return self._lead(key, flight)
        return self._wait(key, flight)

    def get_many(self, symbols: list[str]) -> dict[str, QuoteRecord]:
        keys = unique_symbols(symbols)
        if not keys:
            return {}
        if len(keys) == 1:
            return {keys[0]: self._get_isolated(keys[0])}

        workers = min(self.max_workers, len(keys))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="quote-fetch") as pool:
            records = list(pool.map(self._get_isolated, keys))

        out = dict(zip(keys, records))
        logger.info(
            "[QUOTE][batch_resolve] target_count=%d upstream_count=%d fallback_count=%d error_count=%d",
            len(keys),
            sum(1 for r in records if r.source == "upstream"),
            sum(1 for r in records if r.source == "calculated_fallback"),
            sum(1 for r in records if r.source == "error"),
        )
        return out

    def _get_isolated(self, symbol: str) -> QuoteRecord:
        try:
            return self.get(symbol)
        except Exception:
            logger.exception("[QUOTE][get_failed] symbol=%s", symbol)
            return QuoteRecord(symbol=symbol, source="error")

    def _lead(self, key: str, flight: _Flight) -> QuoteRecord:
        record: QuoteRecord | None = None
        try:
            record = self._fetch(key)
        finally:
            with self._lock:
                if record is not None:
                    self._store(key, record)
                self._flights.pop(key, None)
                flight.record = record
            flight.done.set()
        return record

    def _wait(self, key: str, flight: _Flight) -> QuoteRecord:
        if flight.done.wait(self.wait_timeout_sec) and flight.record is not None:
            return flight.record
        return self._degraded(key, TimeoutError("in-flight fetch did not complete"))

    def _fetch(self, key: str) -> QuoteRecord:
        with self._lock:
            self._counters["upstream_calls"] += 1
        try:
            fetched = self.upstream.fetch_quote(key)
            if fetched is None or not fetched.has_data:
                raise UpstreamDataInvalidError(f"no usable quote for {key}")
        except Exception as exc:
            return self._degraded(key, exc)
        return fetched.model_copy(update={"symbol": key, "source": "upstream"})

    def _degraded(self, key: str, exc: BaseException) -> QuoteRecord:
        with self._lock:
            self._counters["upstream_failures"] += 1
            last = self._last_good.get(key)
            if last is None:
                self._counters["errors"] += 1
            else:
                self._counters["fallbacks"] += 1

        if last is None:
            logger.warning(
                "[QUOTE][no_data] symbol=%s error=%s",
                key,
                NoDataAvailableError(f"{key}: {exc}"),
            )
            return QuoteRecord(symbol=key, source="error")

        logger.warning("[QUOTE][fallback] symbol=%s price=%s error=%s", key, last.price, exc)
        return self._flat_hold(last)

    @staticmethod
    def _flat_hold(last: QuoteRecord) -> QuoteRecord:
        price = float(last.price)
        previous_close = last.previous_close or price
        change = round(price - previous_close, 2)
        change_pct = round(change / previous_close * 100, 4) if previous_close else 0.0
        return last.model_copy(
            update={
                "price": price,
                "change": change,
                "change_pct": change_pct,
                "previous_close": previous_close,
                "source": "calculated_fallback",
            }
        )

    def _store(self, key: str, record: QuoteRecord) -> None:
        self._entries[key] = CacheEntry(record=record, captured_at=self._clock())
        if record.source != "upstream":
            return

        self._last_good[key] = record
        points = self._history.get(key)
        if points is None:
            points = self._history[key] = deque(maxlen=self.history_size)
        point = QuotePoint(t=int(record.time or self._clock()), price=float(record.price))
        if points and points[-1].t == point.t:
            points[-1] = point
        else:
            points.append(point)

    def peek(self, symbol: str) -> QuoteRecord | None:
        with self._lock:
            entry = self._entries.get(normalize_symbol(symbol))
        return entry.record if entry is not None else None

    def recent_points(self, symbol: str) -> list[QuotePoint]:
        with self._lock:
            return list(self._history.get(normalize_symbol(symbol), ()))

    def price_range(self, symbol: str) -> tuple[float, float] | None:
        points = self.recent_points(symbol)
        if not points:
            return None
        prices = [p.price for p in points]
        return min(prices), max(prices)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._last_good.clear()
            self._history.clear()
        logger.info("[QUOTE][cache_cleared]")

    def metrics(self) -> dict[str, int | float]:
        with self._lock:
            return {
                **self._counters,
                "cached_symbols": len(self._entries),
                "in_flight": len(self._flights),
                "ttl_sec": self.ttl_sec,
            }
