# tests/data/providers/test_reference.py
import asyncio

import pytest

from polygon_proxy.core.data.providers.reference import ReferenceDataProvider
from polygon_proxy.core.errors import EnrichmentFailed, RequestFailed
from polygon_proxy.core.storage.ttl_cache import TTLCache


class FakeDetails:
    def __init__(self, details):
        self.details = details
        self.calls = 0

    async def ticker_details(self, ticker):
        self.calls += 1
        detail = self.details.get(ticker, {})
        if isinstance(detail, Exception):
            raise detail
        return detail


def test_fetch_maps_and_caches():
    rest = FakeDetails(
        {"NVDA": {"name": "NVIDIA Corp", "sic_description": "SEMICONDUCTORS", "market_cap": 2.2e12}}
    )
    cache = TTLCache(capacity=10)
    provider = ReferenceDataProvider(rest, cache, ttl=60)

    first = asyncio.run(provider.fetch("NVDA"))
    second = asyncio.run(provider.fetch("NVDA"))

    assert first.sector == "SEMICONDUCTORS"
    assert first.market_cap == 2.2e12
    assert second == first
    assert rest.calls == 1
    assert "reference:NVDA" in cache


def test_non_numeric_market_cap_is_dropped():
    rest = FakeDetails({"X": {"sic_description": "RETAIL", "market_cap": "big"}})

    reference = asyncio.run(ReferenceDataProvider(rest, TTLCache()).fetch("X"))

    assert reference.market_cap is None


@pytest.mark.parametrize("detail", [{}, RequestFailed("ticker_details[Z]", "HTTP 404")])
def test_missing_details_raise_enrichment_failed(detail):
    rest = FakeDetails({"Z": detail})

    with pytest.raises(EnrichmentFailed):
        asyncio.run(ReferenceDataProvider(rest, TTLCache()).fetch("Z"))


def test_invalid_details_payload_is_an_enrichment_failure():
    rest = FakeDetails({"Q": {"name": 123}})

    with pytest.raises(EnrichmentFailed, match="Q"):
        asyncio.run(ReferenceDataProvider(rest, TTLCache()).fetch("Q"))
