"""
Gainers Aggregator
Ranks symbols by intraday percent move. The live snapshot is preferred;
when it fails or yields nothing rankable, the grouped daily bars of the
last trading day are ranked instead.
"""

from datetime import datetime
from typing import Callable, List, Optional

from prometheus_client import Summary

from polygon_proxy.config import GAINERS_MAX_LIMIT
from polygon_proxy.core.data.market_calendar import MarketCalendarWalker, market_today
from polygon_proxy.core.data.providers.polygon_rest import PolygonRestProvider
from polygon_proxy.core.data.providers.reference import ReferenceDataProvider
from polygon_proxy.core.data.schema import GainerRow, GainersResult
from polygon_proxy.core.data.transforms import grouped_to_row, rank_rows, snapshot_to_row
from polygon_proxy.core.errors import (
    GainersUnavailable,
    RequestFailed,
    SnapshotUnavailable,
    StrategiesExhausted,
)
from polygon_proxy.core.utils.fallback import first_available
from polygon_proxy.core.utils.logger import get_logger

logger = get_logger(__name__)

AGGREGATION_LATENCY = Summary(
    "polygon_proxy_gainers_latency_seconds", "Time spent computing gainers"
)


class GainersAggregator:
    """Computes the ranked gainers list"""

    def __init__(
        self,
        rest: PolygonRestProvider,
        walker: MarketCalendarWalker,
        reference: Optional[ReferenceDataProvider] = None,
        capacity: int = GAINERS_MAX_LIMIT,
        max_back: int = 5,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.rest = rest
        self.walker = walker
        self.reference = reference
        self.capacity = capacity
        self.max_back = max_back
        self.now = now or walker.now

    def clamp_limit(self, limit: int) -> int:
        return max(1, min(int(limit), self.capacity))

    async def compute_gainers(self, limit: int, enrich: bool = False) -> GainersResult:
        """
        Ranked gainers, snapshot first, grouped bars second.

        Raises:
            GainersUnavailable: both strategies raised
        """
        limit = self.clamp_limit(limit)

        with AGGREGATION_LATENCY.time():
            try:
                outcome = await first_available(
                    [
                        ("snapshot", lambda: self._from_snapshot(limit)),
                        ("grouped", lambda: self._from_grouped(limit)),
                    ],
                    is_empty=lambda result: not result.results,
                )
            except StrategiesExhausted as e:
                logger.error(f"❌ Gainers unavailable: {e}")
                raise GainersUnavailable(str(e), cause=e) from e

            result: GainersResult = outcome.value
            if enrich and self.reference is not None and result.results:
                result.results = await self.reference.enrich(result.results)

        logger.info(
            f"Gainers: {len(result.results)} rows from {result.source} for {result.date}"
        )
        return result

    async def _from_snapshot(self, limit: int) -> GainersResult:
        date = market_today(self.now).isoformat()
        try:
            entries = await self.rest.snapshot_all()
        except RequestFailed as e:
            raise SnapshotUnavailable(str(e)) from e

        rows: List[GainerRow] = []
        for entry in entries:
            row = snapshot_to_row(entry, date)
            if row is not None:
                rows.append(row)

        if entries and not rows:
            logger.info(f"Snapshot had {len(entries)} entries, none rankable")

        return GainersResult(date=date, source="snapshot", results=rank_rows(rows, limit))

    async def _from_grouped(self, limit: int) -> GainersResult:
        trading_day = await self.walker.find_last_trading_day(self.max_back)

        rows: List[GainerRow] = []
        for bar in trading_day.rows:
            row = grouped_to_row(bar, trading_day.date)
            if row is not None:
                rows.append(row)

        return GainersResult(
            date=trading_day.date, source="grouped", results=rank_rows(rows, limit)
        )
