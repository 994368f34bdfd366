import asyncio
from typing import List, Optional

from pydantic import ValidationError

from polygon_proxy.config import ENRICH_CONCURRENCY, REFERENCE_TTL
from polygon_proxy.core.data.providers.polygon_rest import PolygonRestProvider
from polygon_proxy.core.data.schema import GainerRow, TickerReference
from polygon_proxy.core.errors import EnrichmentFailed, RequestFailed
from polygon_proxy.core.storage.ttl_cache import TTLCache
from polygon_proxy.core.utils.logger import get_logger

logger = get_logger(__name__)


class ReferenceDataProvider:
    """Slow-changing per-ticker reference data (sector, market cap)"""

    CACHE_PREFIX = "reference:"

    def __init__(
        self,
        rest: PolygonRestProvider,
        cache: TTLCache,
        ttl: float = REFERENCE_TTL,
        concurrency: int = ENRICH_CONCURRENCY,
    ):
        self.rest = rest
        self.cache = cache
        self.ttl = ttl
        self.concurrency = concurrency

        # shared by every enrich() call on the loop that created it
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._semaphore_loop: Optional[asyncio.AbstractEventLoop] = None

    def _limiter(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._semaphore_loop is not loop:
            self._semaphore = asyncio.Semaphore(self.concurrency)
            self._semaphore_loop = loop
        return self._semaphore

    async def fetch(self, ticker: str) -> TickerReference:
        key = self.CACHE_PREFIX + ticker
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            details = await self.rest.ticker_details(ticker)
        except RequestFailed as e:
            raise EnrichmentFailed(ticker, str(e)) from e

        if not details:
            raise EnrichmentFailed(ticker, "no reference data")

        market_cap = details.get("market_cap")
        try:
            reference = TickerReference(
                ticker=ticker,
                name=details.get("name"),
                sector=details.get("sic_description"),
                market_cap=market_cap if isinstance(market_cap, (int, float)) else None,
            )
        except ValidationError as e:
            raise EnrichmentFailed(ticker, f"unexpected details payload: {e}") from e

        self.cache.set(key, reference, self.ttl)
        return reference

    async def enrich(self, rows: List[GainerRow]) -> List[GainerRow]:
        """
        Attach sector / market cap to each row.

        At most `concurrency` lookups are in flight across all concurrent
        callers. A ticker whose lookup fails keeps its row, just without
        enrichment fields.
        """
        semaphore = self._limiter()

        async def lookup(row: GainerRow) -> GainerRow:
            async with semaphore:
                try:
                    reference = await self.fetch(row.ticker)
                except EnrichmentFailed as e:
                    logger.debug(f"{e}")
                    return row
            return row.model_copy(
                update={"sector": reference.sector, "market_cap": reference.market_cap}
            )

        return list(await asyncio.gather(*(lookup(row) for row in rows)))
