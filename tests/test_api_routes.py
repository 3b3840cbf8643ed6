import threading
import time
import unittest
from unittest.mock import MagicMock

from fastapi.testclient import TestClient

from lnstocks.config.settings import Settings
from lnstocks.errors import UpstreamUnavailableError
from lnstocks.integrations.finnhub_rest import FinnhubRestClient
from lnstocks.main import _DemoUpstreamClient, create_app
from lnstocks.schemas.metrics import Fundamentals
from lnstocks.schemas.quote import QuoteRecord
from lnstocks.schemas.search import SearchDocument


class StubUpstream:
    def __init__(self) -> None:
        self.prices = {"AAPL": 190.0, "VOO": 420.10, "MSFT": 410.0}
        self.quote_calls = 0
        self._lock = threading.Lock()

    def fetch_quote(self, symbol: str) -> QuoteRecord:
        with self._lock:
            self.quote_calls += 1
        if symbol not in self.prices:
            raise UpstreamUnavailableError(f"timeout:{symbol}")
        price = self.prices[symbol]
        return QuoteRecord(
            symbol=symbol,
            price=price,
            change=1.0,
            change_pct=round(1.0 / (price - 1.0) * 100, 4),
            previous_close=price - 1.0,
            time=1700000000,
            source="upstream",
        )

    def fetch_fundamentals(self, symbol: str) -> Fundamentals:
        if symbol == "AAPL":
            return Fundamentals(market_cap=2.9e12, week52_high=200.0, week52_low=150.0)
        raise UpstreamUnavailableError("no fundamentals")

    def fetch_symbol_universe(self) -> list[SearchDocument]:
        return [
            SearchDocument(symbol="AAPL", name="Apple Inc", type="Common Stock", primary_exchange="XNAS"),
            SearchDocument(symbol="AAP", name="Advance Auto Parts", type="Common Stock", primary_exchange="XNYS"),
            SearchDocument(symbol="AAPLX", name="Apple Extended", type="ETP", primary_exchange="ARCX"),
            SearchDocument(symbol="VOO", name="Vanguard S&P 500 ETF", type="ETP", primary_exchange="ARCX"),
        ]


class ApiRoutesTest(unittest.TestCase):
    def setUp(self):
        self.upstream = StubUpstream()
        self.app = create_app(Settings(), upstream=self.upstream, start_scheduler=False)
        self.client = TestClient(self.app)

    def test_health(self):
        res = self.client.get('/v1/health')

        self.assertEqual(res.status_code, 200)
        body = res.json()
        self.assertEqual(body['status'], 'running')
        self.assertEqual(body['upstream'], 'demo')
        self.assertEqual(body['index'], 'initializing')

    def test_quotes_batch_dedupes_and_tags_errors(self):
        res = self.client.get('/v1/quotes', params={'symbols': 'aapl,AAPL, voo ,XYZ'})

        self.assertEqual(res.status_code, 200)
        body = res.json()
        self.assertEqual(set(body), {'AAPL', 'VOO', 'XYZ'})
        self.assertEqual(body['VOO']['price'], 420.10)
        self.assertEqual(body['AAPL']['source'], 'upstream')
        self.assertEqual(body['XYZ']['source'], 'error')
        self.assertIsNone(body['XYZ']['price'])
        self.assertEqual(self.upstream.quote_calls, 3)

    def test_quotes_requires_symbols(self):
        self.assertEqual(self.client.get('/v1/quotes').status_code, 400)
        self.assertEqual(self.client.get('/v1/quotes', params={'symbols': ' , '}).status_code, 400)

    def test_quotes_are_capped_per_request(self):
        settings = Settings(MAX_SYMBOLS_PER_REQUEST=2)
        client = TestClient(create_app(settings, upstream=self.upstream, start_scheduler=False))

        body = client.get('/v1/quotes', params={'symbols': 'AAPL,VOO,MSFT'}).json()

        self.assertEqual(set(body), {'AAPL', 'VOO'})

    def test_single_quote_is_cached(self):
        first = self.client.get('/v1/quotes/voo').json()
        second = self.client.get('/v1/quotes/VOO').json()

        self.assertEqual(first, second)
        self.assertEqual(first['symbol'], 'VOO')
        self.assertEqual(self.upstream.quote_calls, 1)

    def test_metrics_omit_symbols_without_data(self):
        res = self.client.get('/v1/metrics', params={'symbols': 'AAPL,VOO,XYZ'})

        self.assertEqual(res.status_code, 200)
        body = res.json()
        self.assertEqual(set(body), {'AAPL', 'VOO'})
        self.assertEqual(body['AAPL']['source'], 'computed')
        self.assertEqual(body['AAPL']['market_cap'], 2.9e12)
        self.assertEqual(body['VOO']['source'], 'estimated')
        self.assertEqual(body['VOO']['week52_high'], 420.10)

    def test_series_returns_recent_points(self):
        self.client.get('/v1/quotes/AAPL')

        body = self.client.get('/v1/series', params={'symbols': 'AAPL,XYZ'}).json()

        self.assertEqual(body['AAPL']['source'], 'quote_history')
        self.assertEqual(body['AAPL']['points'], [{'t': 1700000000, 'price': 190.0}])
        self.assertEqual(body['XYZ']['points'], [])

    def test_search_before_and_after_build(self):
        before = self.client.get('/v1/search', params={'q': 'AAP'}).json()
        self.assertEqual(before['results'], [])
        self.assertEqual(before['count'], 0)

        self.app.state.symbol_index.build()

        body = self.client.get('/v1/search', params={'q': 'AAP'}).json()
        self.assertEqual([r['symbol'] for r in body['results']], ['AAP', 'AAPL', 'AAPLX'])
        self.assertEqual(body['count'], 3)
        self.assertEqual(body['results'][1]['primary_exchange'], 'XNAS')

    def test_blank_search_is_empty_not_error(self):
        for built in (False, True):
            if built:
                self.app.state.symbol_index.build()
            for q in ('', '   '):
                res = self.client.get('/v1/search', params={'q': q})
                self.assertEqual(res.status_code, 200)
                self.assertEqual(res.json()['results'], [])
                self.assertEqual(res.json()['count'], 0)

    def test_index_status_reports_readiness(self):
        body = self.client.get('/v1/index/status').json()
        self.assertEqual(body['status'], 'initializing')
        self.assertFalse(body['stats']['is_initialized'])

        self.app.state.symbol_index.build()

        body = self.client.get('/v1/index/status').json()
        self.assertEqual(body['status'], 'ready')
        self.assertEqual(body['stats']['document_count'], 4)

    def test_symbol_lookup(self):
        self.assertEqual(self.client.get('/v1/symbols/AAPL').status_code, 503)

        self.app.state.symbol_index.build()

        res = self.client.get('/v1/symbols/aapl')
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()['name'], 'Apple Inc')
        self.assertEqual(self.client.get('/v1/symbols/NOPE').status_code, 404)

    def test_rebuild_requires_operator_token(self):
        self.assertEqual(self.client.post('/v1/index/rebuild').status_code, 400)

        res = self.client.post('/v1/index/rebuild', headers={'X-Operator-Token': 'ops'})

        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.json()['success'])
        self.assertEqual(res.json()['stats']['state'], 'ready')

    def test_cache_metrics(self):
        self.client.get('/v1/quotes/AAPL')
        self.client.get('/v1/quotes/AAPL')

        body = self.client.get('/v1/metrics/cache').json()

        self.assertEqual(body['hits'], 1)
        self.assertEqual(body['upstream_calls'], 1)
        self.assertEqual(body['cached_symbols'], 1)
        self.assertEqual(body['index_state'], 'uninitialized')


class AppLifecycleTest(unittest.TestCase):
    def test_scheduler_builds_index_on_startup_and_stops_on_shutdown(self):
        app = create_app(Settings(), upstream=StubUpstream())
        scheduler = app.state.index_scheduler
        index = app.state.symbol_index

        with TestClient(app) as client:
            deadline = time.monotonic() + 2.0
            while not index.is_ready and time.monotonic() < deadline:
                time.sleep(0.01)
            self.assertTrue(index.is_ready)
            self.assertTrue(scheduler.running)
            self.assertEqual(client.get('/v1/index/status').json()['status'], 'ready')

        self.assertFalse(scheduler.running)

    def test_waiter_gets_leader_outcome_when_reply_outlasts_timeout(self):
        settings = Settings(UPSTREAM_TIMEOUT_SEC=0.2, UPSTREAM_RETRY_ATTEMPTS=1, UPSTREAM_BACKOFF_BASE_SEC=0)
        entered = threading.Event()

        def slow_get(*args, **kwargs):
            entered.set()
            time.sleep(0.3)
            response = MagicMock()
            response.json.return_value = {"c": 190.0, "pc": 189.0, "t": 1700000000}
            return response

        session = MagicMock()
        session.get.side_effect = slow_get
        upstream = FinnhubRestClient(
            api_key="key-123",
            session=session,
            timeout_sec=settings.UPSTREAM_TIMEOUT_SEC,
            retry_attempts=settings.UPSTREAM_RETRY_ATTEMPTS,
            backoff_base_sec=settings.UPSTREAM_BACKOFF_BASE_SEC,
        )
        cache = create_app(settings, upstream=upstream, start_scheduler=False).state.quote_cache
        results = {}

        leader = threading.Thread(target=lambda: results.update(leader=cache.get("AAPL").source))
        leader.start()
        self.assertTrue(entered.wait(1.0))
        results["waiter"] = cache.get("AAPL").source
        leader.join(2.0)

        self.assertEqual(results, {"leader": "upstream", "waiter": "upstream"})
        self.assertEqual(session.get.call_count, 1)

    def test_demo_upstream_serves_quotes_and_universe(self):
        app = create_app(Settings(), upstream=_DemoUpstreamClient(), start_scheduler=False)
        client = TestClient(app)
        app.state.symbol_index.build()

        quote = client.get('/v1/quotes/VOO').json()
        search = client.get('/v1/search', params={'q': 'vanguard'}).json()

        self.assertEqual(quote['source'], 'upstream')
        self.assertGreater(quote['price'], 0)
        self.assertEqual([r['symbol'] for r in search['results']], ['VOO'])


if __name__ == '__main__':
    unittest.main()
