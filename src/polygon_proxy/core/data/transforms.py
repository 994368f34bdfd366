"""
Normalization of Polygon REST payloads into GainerRow records.

Snapshot entries come in several shapes depending on endpoint and plan, so
every field is read through an explicit precedence list (first non-null
wins). Grouped daily bars use the fixed short keys T/o/c/v.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import polars as pl

from polygon_proxy.core.data.schema import GainerRow

TICKER_KEYS = ("ticker", "T", "sym", "symbol")
LAST_PRICE_KEYS = ("lastTrade.p", "min.c", "day.c", "lastPrice", "price")
PREV_CLOSE_KEYS = ("prevDay.c", "prevClose", "previousClose", "prev_close")
VOLUME_KEYS = ("day.v", "min.av", "volume")


@dataclass(frozen=True)
class SnapshotQuote:
    ticker: Optional[str]
    last_price: Optional[float]
    prev_close: Optional[float]
    volume: Optional[float]


def _lookup(entry: Dict[str, Any], path: str) -> Any:
    value: Any = entry
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _first(entry: Dict[str, Any], paths: Sequence[str], convert) -> Any:
    for path in paths:
        value = convert(_lookup(entry, path))
        if value is not None:
            return value
    return None


def _to_float(value: Any) -> Optional[float]:
    """Real JSON numbers only; bools, strings and NaN/inf are rejected."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    if not math.isfinite(value):
        return None
    return value


def _to_ticker(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def normalize_snapshot_entry(entry: Dict[str, Any]) -> SnapshotQuote:
    """Pull ticker / last price / previous close / volume out of one entry.

    A zero last price (pre-market `day.c`) counts as present; callers decide
    what to do with it.
    """
    if not isinstance(entry, dict):
        return SnapshotQuote(None, None, None, None)
    return SnapshotQuote(
        ticker=_first(entry, TICKER_KEYS, _to_ticker),
        last_price=_first(entry, LAST_PRICE_KEYS, _to_float),
        prev_close=_first(entry, PREV_CLOSE_KEYS, _to_float),
        volume=_first(entry, VOLUME_KEYS, _to_float),
    )


def compute_change(open_: float, close: float) -> tuple:
    """(change, pct_change) rounded to 4 and 2 decimals"""
    change = close - open_
    return round(change, 4), round(change / open_ * 100, 2)


def snapshot_to_row(entry: Dict[str, Any], date: str) -> Optional[GainerRow]:
    quote = normalize_snapshot_entry(entry)
    if quote.ticker is None or quote.last_price is None or quote.prev_close is None:
        return None
    if quote.prev_close <= 0:
        return None

    change, pct_change = compute_change(quote.prev_close, quote.last_price)
    return GainerRow(
        ticker=quote.ticker,
        open=quote.prev_close,
        close=quote.last_price,
        change=change,
        pct_change=pct_change,
        volume=quote.volume,
        date=date,
        source="snapshot",
    )


def grouped_to_row(bar: Dict[str, Any], date: str) -> Optional[GainerRow]:
    if not isinstance(bar, dict):
        return None
    ticker = _to_ticker(bar.get("T"))
    open_ = _to_float(bar.get("o"))
    close = _to_float(bar.get("c"))
    if ticker is None or open_ is None or close is None or open_ <= 0:
        return None

    change, pct_change = compute_change(open_, close)
    return GainerRow(
        ticker=ticker,
        open=open_,
        close=close,
        change=change,
        pct_change=pct_change,
        volume=_to_float(bar.get("v")),
        date=date,
        source="grouped",
    )


def rank_rows(rows: List[GainerRow], limit: int) -> List[GainerRow]:
    """Sort by pct_change descending and keep the first `limit`.

    The sort is stable: equal moves keep their upstream order.
    """
    if not rows or limit <= 0:
        return []

    order = (
        pl.DataFrame(
            {
                "idx": list(range(len(rows))),
                "pct_change": [row.pct_change for row in rows],
            }
        )
        .sort("pct_change", descending=True, maintain_order=True)
        .head(limit)
        .get_column("idx")
        .to_list()
    )
    return [rows[i] for i in order]
