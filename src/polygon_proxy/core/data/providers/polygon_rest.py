import asyncio
import json
from typing import Any, Dict, List, Optional

from polygon import RESTClient

from polygon_proxy.core.errors import RequestFailed
from polygon_proxy.core.utils.logger import get_logger

logger = get_logger(__name__)


class PolygonRestProvider:
    """
    Async facade over polygon.RESTClient.

    Every call goes through the blocking client on a worker thread with
    raw=True, so the proxy sees Polygon's JSON as-is and normalizes it
    itself. Each call is bounded by `timeout`; timeouts and HTTP/transport
    errors surface as RequestFailed. A timed-out call keeps running on its
    thread and its result is discarded.
    """

    def __init__(
        self,
        api_key: str,
        timeout: float = 12.0,
        client: Optional[RESTClient] = None,
    ):
        self.timeout = timeout
        self.client = client or RESTClient(
            api_key,
            connect_timeout=timeout,
            read_timeout=timeout,
            retries=1,
        )

    async def _call(self, endpoint: str, method, *args, **kwargs) -> Dict[str, Any]:
        try:
            resp = await asyncio.wait_for(
                asyncio.to_thread(method, *args, raw=True, **kwargs),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise RequestFailed(endpoint, f"timed out after {self.timeout}s")
        except Exception as e:
            raise RequestFailed(endpoint, str(e)) from e

        try:
            data = json.loads(resp.data)
        except (TypeError, ValueError) as e:
            raise RequestFailed(endpoint, f"invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise RequestFailed(endpoint, f"unexpected payload type {type(data).__name__}")
        return data

    @staticmethod
    def _list(data: Dict[str, Any], *keys: str) -> List[Dict[str, Any]]:
        for key in keys:
            value = data.get(key)
            if isinstance(value, list):
                return value
        return []

    # ----------------- market wide -----------------------
    async def snapshot_all(self) -> List[Dict[str, Any]]:
        """Full-market intraday snapshot, one entry per ticker"""
        data = await self._call(
            "snapshot_all",
            self.client.get_snapshot_all,
            market_type="stocks",
            include_otc=False,
        )
        return self._list(data, "tickers", "results")

    async def snapshot_gainers(self) -> List[Dict[str, Any]]:
        data = await self._call(
            "snapshot_gainers",
            self.client.get_snapshot_direction,
            market_type="stocks",
            direction="gainers",
        )
        return self._list(data, "tickers", "results")

    async def grouped_daily(self, date: str) -> List[Dict[str, Any]]:
        """Grouped daily bars (T/o/h/l/c/v) for every ticker on `date`"""
        data = await self._call(
            f"grouped_daily[{date}]",
            self.client.get_grouped_daily_aggs,
            date=date,
            adjusted=True,
        )
        return self._list(data, "results")

    # ----------------- per symbol -----------------------
    async def ticker_details(self, ticker: str) -> Dict[str, Any]:
        data = await self._call(
            f"ticker_details[{ticker}]", self.client.get_ticker_details, ticker=ticker
        )
        results = data.get("results")
        return results if isinstance(results, dict) else {}

    async def ticker_snapshot(self, ticker: str) -> Dict[str, Any]:
        return await self._call(
            f"ticker_snapshot[{ticker}]",
            self.client.get_snapshot_ticker,
            market_type="stocks",
            ticker=ticker,
        )

    async def previous_close(self, ticker: str) -> Optional[Dict[str, Any]]:
        data = await self._call(
            f"previous_close[{ticker}]",
            self.client.get_previous_close_agg,
            ticker=ticker,
            adjusted=True,
        )
        results = self._list(data, "results")
        return results[0] if results else None

    async def aggregates(
        self,
        ticker: str,
        multiplier: int,
        timespan: str,
        from_: str,
        to: str,
        adjusted: bool = True,
        sort: str = "asc",
        limit: int = 500,
    ) -> List[Dict[str, Any]]:
        data = await self._call(
            f"aggregates[{ticker}]",
            self.client.get_aggs,
            ticker=ticker,
            multiplier=multiplier,
            timespan=timespan,
            from_=from_,
            to=to,
            adjusted=adjusted,
            sort=sort,
            limit=limit,
        )
        return self._list(data, "results")
