from datetime import date, datetime, timedelta
from typing import Awaitable, Callable, List, Optional

from polygon_proxy.config import MARKET_TZ
from polygon_proxy.core.data.schema import TradingDayResult
from polygon_proxy.core.storage.ttl_cache import TTLCache
from polygon_proxy.core.utils.logger import get_logger

logger = get_logger(__name__)

GroupedFetcher = Callable[[str], Awaitable[List[dict]]]


def market_today(now: Callable[[], datetime]) -> date:
    """Today's date on the exchange clock, whatever the host time zone is"""
    return now().astimezone(MARKET_TZ).date()


def _now() -> datetime:
    return datetime.now(MARKET_TZ)


class MarketCalendarWalker:
    """
    Finds the most recent date with published grouped daily bars.

    Walks back one calendar day at a time from the exchange's today, so
    weekends and holidays (known or not) are skipped by observation rather
    than by a holiday table.
    """

    CACHE_PREFIX = "grouped:"

    def __init__(
        self,
        fetch_grouped: GroupedFetcher,
        cache: Optional[TTLCache] = None,
        cache_ttl: float = 3600.0,
        now: Callable[[], datetime] = _now,
    ):
        self.fetch_grouped = fetch_grouped
        self.cache = cache
        self.cache_ttl = cache_ttl
        self.now = now

    async def find_last_trading_day(self, max_back: int = 5) -> TradingDayResult:
        """
        Probe today, then yesterday, ... for at most `max_back + 1` dates.

        Returns:
            TradingDayResult for the first date with rows; if none of them has
            any, yesterday's date with no rows and found=False.
        """
        today = market_today(self.now)

        for offset in range(max_back + 1):
            day = today - timedelta(days=offset)
            day_str = day.isoformat()
            rows = await self._grouped_for(day_str, cacheable=offset > 0)
            if rows:
                logger.info(
                    f"📅 Last trading day with grouped data: {day_str} "
                    f"({len(rows)} rows, {offset + 1} probes)"
                )
                return TradingDayResult(date=day_str, rows=rows, probes=offset + 1)
            logger.debug(f"No grouped data for {day_str}")

        fallback = (today - timedelta(days=1)).isoformat()
        logger.warning(
            f"⚠️ No grouped data in the last {max_back + 1} days, reporting {fallback}"
        )
        return TradingDayResult(
            date=fallback, rows=[], found=False, probes=max_back + 1
        )

    async def _grouped_for(self, day: str, cacheable: bool) -> List[dict]:
        # past sessions never change; today's bar may still be forming
        key = self.CACHE_PREFIX + day
        if cacheable and self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        rows = await self.fetch_grouped(day)

        if cacheable and rows and self.cache is not None:
            self.cache.set(key, rows, self.cache_ttl)
        return rows
