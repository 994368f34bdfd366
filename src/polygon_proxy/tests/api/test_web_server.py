# tests/api/test_web_server.py
import asyncio
from datetime import datetime

import pytest

from polygon_proxy.config import MARKET_TZ
from polygon_proxy.core.api.web_server import ProxyServer, parse_limit
from polygon_proxy.core.data.schema import GainerRow, GainersResult
from polygon_proxy.core.errors import GainersUnavailable, RequestFailed
from polygon_proxy.core.utils.loop_thread import EventLoopThread

NOW = datetime(2024, 3, 12, 15, 0, tzinfo=MARKET_TZ)


class FakeAggregator:
    def __init__(self, error=None, delay=0.0):
        self.error = error
        self.delay = delay
        self.calls = []
        self.now = lambda: NOW

    async def compute_gainers(self, limit, enrich=False):
        self.calls.append((limit, enrich))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        row = GainerRow(
            ticker="AAA",
            open=10.0,
            close=12.0,
            change=2.0,
            pct_change=20.0,
            volume=100.0,
            date="2024-03-12",
            source="grouped",
        )
        return GainersResult(date="2024-03-12", source="grouped", results=[row])


class FakeRest:
    def __init__(self):
        self.minute_bars = []
        self.snapshot = {}
        self.prev = {"T": "AAPL", "c": 170.25}
        self.aggregate_calls = []
        self.fail = False

    async def aggregates(self, ticker, multiplier, timespan, from_, to, **kwargs):
        self.aggregate_calls.append((ticker, multiplier, timespan, from_, to, kwargs))
        if self.fail:
            raise RequestFailed("aggregates", "HTTP 500")
        return self.minute_bars

    async def ticker_snapshot(self, ticker):
        return self.snapshot

    async def previous_close(self, ticker):
        if self.fail:
            raise RequestFailed("previous_close", "HTTP 500")
        return self.prev

    async def snapshot_gainers(self):
        return [{"ticker": "AAA"}]


@pytest.fixture
def runtime():
    loop_thread = EventLoopThread(name="test-loop").start()
    yield loop_thread
    loop_thread.stop()


@pytest.fixture
def rest():
    return FakeRest()


def _client(runtime, rest, aggregator=None, **kwargs):
    server = ProxyServer(aggregator or FakeAggregator(), rest, runtime, **kwargs)
    server.app.testing = True
    return server.app.test_client()


def test_health(runtime, rest):
    response = _client(runtime, rest).get("/health")

    assert response.status_code == 200
    body = response.get_json()
    assert body["ok"] is True
    assert body["status"] == "ok"
    assert response.headers["Access-Control-Allow-Origin"] == "*"


@pytest.mark.parametrize(
    "query,expected",
    [("", 20), ("?limit=10000", 200), ("?limit=abc", 20), ("?limit=0", 1), ("?limit=-3", 1), ("?limit=7", 7)],
)
def test_gainers_limit_is_clamped(runtime, rest, query, expected):
    aggregator = FakeAggregator()
    response = _client(runtime, rest, aggregator).get(f"/gainers{query}")

    assert response.status_code == 200
    assert aggregator.calls == [(expected, False)]


def test_gainers_payload(runtime, rest):
    response = _client(runtime, rest).get("/gainers?enrich=1")

    body = response.get_json()
    assert body["source"] == "grouped"
    assert body["results"][0]["pctChange"] == 20.0
    assert "sector" not in body["results"][0]


def test_gainers_unavailable_is_502(runtime, rest):
    aggregator = FakeAggregator(error=GainersUnavailable("both strategies failed"))
    response = _client(runtime, rest, aggregator).get("/gainers")

    assert response.status_code == 502
    assert response.get_json()["error"] == "Failed to fetch gainers"


def test_gainers_timeout_is_504(runtime, rest):
    aggregator = FakeAggregator(delay=0.5)
    response = _client(runtime, rest, aggregator, response_timeout=0.05).get("/gainers")

    assert response.status_code == 504


def test_price_prefers_minute_bar(runtime, rest):
    rest.minute_bars = [{"c": 187.4}]
    rest.snapshot = {"ticker": {"lastTrade": {"p": 180.0}}}

    body = _client(runtime, rest).get("/price/aapl").get_json()

    assert body == {"symbol": "AAPL", "price": 187.4}
    ticker, _, timespan, start, end, kwargs = rest.aggregate_calls[0]
    assert (ticker, timespan, start, end) == ("AAPL", "minute", "2024-03-12", "2024-03-12")
    assert kwargs["sort"] == "desc"


def test_price_falls_back_to_snapshot(runtime, rest):
    rest.fail = True
    rest.snapshot = {"ticker": {"lastTrade": {"p": 180.0}}}

    body = _client(runtime, rest).get("/price/AAPL").get_json()

    assert body["price"] == 180.0


def test_previous_close(runtime, rest):
    body = _client(runtime, rest).get("/previous_close/aapl").get_json()

    assert body["symbol"] == "AAPL"
    assert body["previousClose"] == 170.25


def test_previous_close_failure(runtime, rest):
    rest.fail = True
    response = _client(runtime, rest).get("/previous_close/AAPL")

    assert response.status_code == 500
    assert "previous_close" in response.get_json()["message"]


def test_ohlcv_defaults_to_today(runtime, rest):
    rest.minute_bars = [{"o": 1, "h": 2, "l": 0.5, "c": 1.5, "v": 10}]

    body = _client(runtime, rest).get("/ohlcv/msft?timespan=day").get_json()

    assert body["results"] == rest.minute_bars
    ticker, multiplier, timespan, start, end, _ = rest.aggregate_calls[0]
    assert (ticker, multiplier, timespan, start, end) == ("MSFT", 1, "day", "2024-03-12", "2024-03-12")


def test_ohlcv_rejects_bad_numbers(runtime, rest):
    response = _client(runtime, rest).get("/ohlcv/MSFT?multiplier=x")

    assert response.status_code == 400


def test_market_top_gainers(runtime, rest):
    body = _client(runtime, rest).get("/market/top-gainers").get_json()

    assert body == {"results": [{"ticker": "AAA"}]}


def test_parse_limit():
    assert parse_limit(None, 200) == 20
    assert parse_limit("50", 200) == 50
    assert parse_limit("1e3", 200) == 20
    assert parse_limit("500", 100) == 100


def test_gainers_unexpected_error_is_json_envelope(runtime, rest):
    aggregator = FakeAggregator(error=KeyError("results"))
    response = _client(runtime, rest, aggregator).get("/gainers")

    assert response.status_code == 500
    assert response.is_json
    assert response.get_json()["error"] == "Failed to fetch gainers"


def test_cors_preflight(runtime, rest):
    response = _client(runtime, rest).options(
        "/gainers",
        headers={
            "Origin": "http://dashboard.local",
            "Access-Control-Request-Method": "GET",
            "Access-Control-Request-Headers": "Content-Type",
        },
    )

    assert response.status_code == 200
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert "GET" in response.headers["Access-Control-Allow-Methods"]
    assert "content-type" in response.headers["Access-Control-Allow-Headers"].lower()
