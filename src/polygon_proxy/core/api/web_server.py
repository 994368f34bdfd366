"""
Web Server for the Polygon proxy
Flask serves the REST routes; the websocket relay and every outbound
Polygon call run on a background asyncio loop.
"""

import concurrent.futures
from datetime import datetime, timezone
from typing import Optional

from flask import Flask, request
from flask_cors import CORS
from prometheus_client import start_http_server

from polygon_proxy.config import GAINERS_DEFAULT_LIMIT, Settings
from polygon_proxy.core.api.relay import FanoutBroker, RelayServer
from polygon_proxy.core.collector.polygon_manager import UpstreamConnectionManager
from polygon_proxy.core.data.gainers_aggregator import GainersAggregator
from polygon_proxy.core.data.market_calendar import MarketCalendarWalker, market_today
from polygon_proxy.core.data.providers.polygon_rest import PolygonRestProvider
from polygon_proxy.core.data.providers.reference import ReferenceDataProvider
from polygon_proxy.core.errors import (
    ConfigError,
    GainersUnavailable,
    RequestFailed,
    StrategiesExhausted,
)
from polygon_proxy.core.storage.ttl_cache import TTLCache
from polygon_proxy.core.utils.fallback import first_available
from polygon_proxy.core.utils.logger import get_logger, setup_logger
from polygon_proxy.core.utils.loop_thread import EventLoopThread

logger = get_logger(__name__)


def parse_limit(raw: Optional[str], cap: int, default: int = GAINERS_DEFAULT_LIMIT) -> int:
    """Clamp ?limit= into [1, cap]; missing or non-numeric means default"""
    try:
        value = int(raw) if raw is not None else default
    except ValueError:
        value = default
    return max(1, min(value, cap))


def _truthy(raw: Optional[str]) -> bool:
    return raw is not None and raw.strip().lower() in ("1", "true", "yes", "on")


def _error(error: str, message, status: int = 500):
    return {"error": error, "message": str(message)}, status


class ProxyServer:
    """HTTP facade over the aggregator and the Polygon REST passthroughs"""

    def __init__(
        self,
        aggregator: GainersAggregator,
        rest: PolygonRestProvider,
        runtime: EventLoopThread,
        max_limit: int = 200,
        response_timeout: float = 90.0,
    ):
        self.app = Flask(__name__)
        CORS(self.app, send_wildcard=True)
        self.aggregator = aggregator
        self.rest = rest
        self.runtime = runtime
        self.max_limit = max_limit
        self.response_timeout = response_timeout

        self._setup_routes()

    def _run(self, coro):
        return self.runtime.run(coro, timeout=self.response_timeout)

    def _setup_routes(self):
        """Setup Flask routes"""
        app = self.app

        @app.route("/health")
        def health():
            return {
                "ok": True,
                "status": "ok",
                "message": "Server is running",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }

        @app.route("/gainers")
        def gainers():
            limit = parse_limit(request.args.get("limit"), self.max_limit)
            enrich = _truthy(request.args.get("enrich"))
            try:
                result = self._run(self.aggregator.compute_gainers(limit, enrich=enrich))
            except GainersUnavailable as e:
                return _error("Failed to fetch gainers", e, 502)
            except concurrent.futures.TimeoutError:
                return _error("Failed to fetch gainers", "timed out waiting for upstream", 504)
            except Exception as e:
                logger.exception(f"❌ Unexpected error computing gainers: {e}")
                return _error("Failed to fetch gainers", e)
            return result.to_payload()

        @app.route("/market/top-gainers")
        def market_top_gainers():
            try:
                results = self._run(self.rest.snapshot_gainers())
            except (RequestFailed, concurrent.futures.TimeoutError) as e:
                return _error("Failed to fetch top gainers", e)
            return {"results": results}

        @app.route("/symbol/<symbol>")
        def symbol_snapshot(symbol):
            try:
                return self._run(self.rest.ticker_snapshot(symbol.upper()))
            except (RequestFailed, concurrent.futures.TimeoutError) as e:
                return _error("Failed to fetch symbol snapshot", e)

        @app.route("/price/<symbol>")
        def price(symbol):
            symbol = symbol.upper()
            try:
                price = self._run(self._latest_price(symbol))
            except (StrategiesExhausted, concurrent.futures.TimeoutError) as e:
                return {"symbol": symbol, "price": None, "error": str(e)}, 500
            return {"symbol": symbol, "price": price}

        @app.route("/previous_close/<symbol>")
        def previous_close(symbol):
            symbol = symbol.upper()
            try:
                prev = self._run(self.rest.previous_close(symbol))
            except (RequestFailed, concurrent.futures.TimeoutError) as e:
                return _error("Failed to fetch previous close", e)
            return {
                "symbol": symbol,
                "previousClose": prev.get("c") if prev else None,
                "raw": prev,
            }

        @app.route("/ohlcv/<symbol>")
        def ohlcv(symbol):
            args = request.args
            end = args.get("to") or market_today(self.aggregator.now).isoformat()
            start = args.get("from") or end
            try:
                results = self._run(
                    self.rest.aggregates(
                        symbol.upper(),
                        multiplier=int(args.get("multiplier", 1)),
                        timespan=args.get("timespan", "minute"),
                        from_=start,
                        to=end,
                        adjusted=args.get("adjusted", "true").lower() != "false",
                        sort=args.get("sort", "asc"),
                        limit=int(args.get("limit", 500)),
                    )
                )
            except ValueError as e:
                return _error("Invalid OHLCV parameters", e, 400)
            except (RequestFailed, concurrent.futures.TimeoutError) as e:
                return _error("Failed to fetch OHLCV", e)
            return {"results": results}

    async def _latest_price(self, symbol: str) -> Optional[float]:
        """Latest minute close; falls back to the snapshot's last trade"""
        today = market_today(self.aggregator.now).isoformat()

        async def from_minute_bar():
            bars = await self.rest.aggregates(
                symbol, 1, "minute", today, today, sort="desc", limit=1
            )
            return bars[0].get("c") if bars else None

        async def from_snapshot():
            snap = await self.rest.ticker_snapshot(symbol)
            for container in (snap.get("ticker"), snap.get("results"), snap):
                if isinstance(container, dict):
                    last_trade = container.get("lastTrade")
                    if isinstance(last_trade, dict) and last_trade.get("p") is not None:
                        return last_trade["p"]
            return None

        outcome = await first_available(
            [("minute_bar", from_minute_bar), ("snapshot", from_snapshot)]
        )
        return outcome.value


def build_server(settings: Settings, runtime: EventLoopThread):
    """Wire cache, providers, aggregator, relay and Flask app together"""
    cache = TTLCache(capacity=settings.cache_capacity, default_ttl=settings.cache_ttl)
    rest = PolygonRestProvider(settings.polygon_api_key, timeout=settings.request_timeout)
    reference = ReferenceDataProvider(
        rest,
        cache,
        ttl=settings.reference_ttl,
        concurrency=settings.enrich_concurrency,
    )
    walker = MarketCalendarWalker(rest.grouped_daily, cache=cache)
    aggregator = GainersAggregator(
        rest,
        walker,
        reference=reference,
        capacity=settings.gainers_max_limit,
        max_back=settings.calendar_max_back,
    )

    upstream = UpstreamConnectionManager(
        settings.polygon_api_key,
        url=settings.polygon_ws_url,
        reconnect_delay=settings.reconnect_delay,
    )
    broker = FanoutBroker(upstream, settings.polygon_api_key)
    relay = RelayServer(broker, settings.host, settings.ws_port)

    server = ProxyServer(
        aggregator, rest, runtime, max_limit=settings.gainers_max_limit
    )
    return server, relay


def main():
    """Main entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Polygon proxy (REST + WebSocket relay)")
    parser.add_argument("--host", help="Host to bind to")
    parser.add_argument("--port", type=int, help="HTTP port")
    parser.add_argument("--ws-port", type=int, help="WebSocket relay port")
    parser.add_argument("--metrics-port", type=int, help="Prometheus port (0 = off)")
    parser.add_argument("--log-level", help="Logging level")
    parser.add_argument("--log-to-file", action="store_true", default=None)
    parser.add_argument(
        "--connect-on-start",
        action="store_true",
        help="Open the upstream connection before the first subscriber",
    )
    parser.add_argument("--debug", action="store_true", help="Enable Flask debug mode")
    args = parser.parse_args()

    try:
        settings = Settings.from_env().override(
            host=args.host,
            port=args.port,
            ws_port=args.ws_port,
            metrics_port=args.metrics_port,
            log_level=args.log_level,
            log_to_file=args.log_to_file,
        )
    except ConfigError as e:
        parser.error(str(e))

    setup_logger(
        "polygon_proxy", level=settings.log_level, log_to_file=settings.log_to_file
    )

    if settings.metrics_port:
        start_http_server(settings.metrics_port)  # localhost:<port>/metrics
        logger.info(f"Metrics on :{settings.metrics_port}/metrics")

    runtime = EventLoopThread().start()
    server, relay = build_server(settings, runtime)
    runtime.run(relay.start(), timeout=10)

    if args.connect_on_start:
        runtime.loop.call_soon_threadsafe(relay.broker.warm_up)

    print(f"✅ polygon-proxy listening on {settings.host}:{settings.port}")
    try:
        server.app.run(
            host=settings.host, port=settings.port, debug=args.debug, threaded=True,
            use_reloader=False,
        )
    finally:
        logger.info("Shutting down...")
        try:
            runtime.run(relay.stop(), timeout=5)
        except Exception as e:
            logger.error(f"Error stopping relay: {e}")
        runtime.stop()


if __name__ == "__main__":
    main()
