from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from lnstocks.errors import MarketDataError, UpstreamDataInvalidError, UpstreamUnavailableError
from lnstocks.schemas.metrics import Fundamentals
from lnstocks.schemas.quote import QuoteRecord
from lnstocks.schemas.search import SearchDocument

logger = logging.getLogger(__name__)

_MILLION = 1_000_000.0


class FinnhubRestClient:
    """Finnhub REST client for quotes, fundamentals and the symbol universe.

    Raw payloads are converted to typed records here; callers never see
    Finnhub field names. Every request is bounded by ``timeout_sec`` and
    retried at most ``retry_attempts`` times on transient failures.
    """

    DEFAULT_BASE_URL = "https://finnhub.io/api/v1"

    def __init__(
        self,
        api_key: str,
        session: Optional[Any] = None,
        base_url: Optional[str] = None,
        timeout_sec: float = 5.0,
        retry_attempts: int = 2,
        backoff_base_sec: float = 0.25,
        exchange: str = "US",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be >= 1")

        self.api_key = api_key
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.session = session or requests
        self.timeout_sec = timeout_sec
        self.retry_attempts = retry_attempts
        self.backoff_base_sec = backoff_base_sec
        self.exchange = exchange
        self._sleep = sleep
        self.requests_sent = 0
        self.retries = 0

    @staticmethod
    def _to_float(value: Any) -> Optional[float]:
        try:
            if value is None or value == "":
                return None
            return float(value)
        except (TypeError, ValueError):
            return None

    @classmethod
    def _positive(cls, value: Any, scale: float = 1.0) -> Optional[float]:
        number = cls._to_float(value)
        if number is None or number <= 0:
            return None
        return number * scale

    @staticmethod
    def _is_retryable(exc: UpstreamUnavailableError) -> bool:
        code = exc.status_code
        return code is None or code == 429 or code >= 500

    def _get_json_once(self, path: str, params: Dict[str, Any]) -> Any:
        self.requests_sent += 1
        try:
            response = self.session.get(
                f"{self.base_url}{path}",
                headers={"X-Finnhub-Token": self.api_key},
                params=params,
                timeout=(self.timeout_sec, self.timeout_sec),
            )
            response.raise_for_status()
        except requests.HTTPError as exc:
            code = getattr(exc.response, "status_code", None)
            raise UpstreamUnavailableError(f"HTTP {code} for {path}", status_code=code) from exc
        except requests.Timeout as exc:
            raise UpstreamUnavailableError(f"timeout for {path}") from exc
        except requests.RequestException as exc:
            raise UpstreamUnavailableError(f"request failed for {path}: {exc}") from exc

        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamDataInvalidError(f"invalid JSON for {path}") from exc

    def _get_json(self, path: str, params: Dict[str, Any]) -> Any:
        if not self.api_key:
            raise UpstreamUnavailableError("FINNHUB_KEY not configured")

        attempt = 1
        while True:
            try:
                return self._get_json_once(path, params)
            except UpstreamUnavailableError as exc:
                if attempt >= self.retry_attempts or not self._is_retryable(exc):
                    raise
                delay = self.backoff_base_sec * (2 ** (attempt - 1))
                logger.info(
                    "[UPSTREAM][retry] path=%s attempt=%d delay=%.2f error=%s",
                    path,
                    attempt,
                    delay,
                    exc,
                )
                self.retries += 1
                attempt += 1
                if delay > 0:
                    self._sleep(delay)

    def fetch_quote(self, symbol: str) -> QuoteRecord:
        payload = self._get_json("/quote", {"symbol": symbol})
        if not isinstance(payload, dict):
            raise UpstreamDataInvalidError(f"quote payload for {symbol} is not an object")

        current = self._positive(payload.get("c"))
        if current is None:
            raise UpstreamDataInvalidError(f"no quote data for {symbol}")

        price = round(current, 2)
        previous_close = round(
            self._positive(payload.get("pc")) or self._positive(payload.get("o")) or current,
            2,
        )
        change = round(price - previous_close, 2)
        change_pct = round(change / previous_close * 100, 4)

        ts = self._to_float(payload.get("t"))
        high = self._positive(payload.get("h"))
        low = self._positive(payload.get("l"))
        open_ = self._positive(payload.get("o"))
        return QuoteRecord(
            symbol=symbol,
            price=price,
            change=change,
            change_pct=change_pct,
            previous_close=previous_close,
            time=int(ts) if ts else int(time.time()),
            source="upstream",
            day_high=round(high, 2) if high else None,
            day_low=round(low, 2) if low else None,
            open=round(open_, 2) if open_ else None,
        )

    def fetch_fundamentals(self, symbol: str) -> Fundamentals:
        profile: Any = None
        metric: Any = None
        errors: List[MarketDataError] = []

        try:
            profile = self._get_json("/stock/profile2", {"symbol": symbol})
        except MarketDataError as exc:
            errors.append(exc)
        try:
            metric = self._get_json("/stock/metric", {"symbol": symbol, "metric": "all"})
        except MarketDataError as exc:
            errors.append(exc)

        if profile is None and metric is None:
            raise errors[-1]

        profile = profile if isinstance(profile, dict) else {}
        values = metric.get("metric") if isinstance(metric, dict) else None
        values = values if isinstance(values, dict) else {}

        # Finnhub reports capitalisation, shares and volume in millions.
        return Fundamentals(
            market_cap=self._positive(profile.get("marketCapitalization"), _MILLION),
            shares_outstanding=self._positive(profile.get("shareOutstanding"), _MILLION),
            week52_high=self._positive(values.get("52WeekHigh")),
            week52_low=self._positive(values.get("52WeekLow")),
            volume=self._positive(values.get("10DayAverageTradingVolume"), _MILLION),
        )

    def fetch_symbol_universe(self) -> List[SearchDocument]:
        payload = self._get_json("/stock/symbol", {"exchange": self.exchange})
        if not isinstance(payload, list):
            raise UpstreamDataInvalidError("symbol universe payload is not an array")

        documents: List[SearchDocument] = []
        skipped = 0
        for item in payload:
            if not isinstance(item, dict):
                skipped += 1
                continue
            documents.append(
                SearchDocument(
                    symbol=str(item.get("symbol") or "").strip().upper(),
                    name=str(item.get("description") or "").strip(),
                    type=str(item.get("type") or "").strip(),
                    market="stocks",
                    active=True,
                    primary_exchange=str(item.get("mic") or self.exchange),
                )
            )

        if skipped:
            logger.warning("[UPSTREAM][universe_skipped] exchange=%s skipped=%d", self.exchange, skipped)
        return documents
