from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Source = Literal["snapshot", "grouped"]


class GainerRow(BaseModel):
    """One ranked symbol; `open` is the previous close for snapshot rows"""

    model_config = ConfigDict(populate_by_name=True)

    ticker: str = Field(..., description="Ticker symbol")
    open: float = Field(..., gt=0, description="Reference price the move is measured from")
    close: float = Field(..., description="Latest / closing price")
    change: float = Field(..., description="close - open, 4 decimals")
    pct_change: float = Field(..., alias="pctChange", description="Percent move, 2 decimals")
    volume: Optional[float] = None
    date: str = Field(..., description="Trading date YYYY-MM-DD")
    source: Source

    # enrichment, absent unless the reference lookup succeeded
    sector: Optional[str] = None
    market_cap: Optional[float] = Field(default=None, alias="marketCap")

    def to_payload(self) -> Dict[str, Any]:
        payload = self.model_dump(by_alias=True, exclude={"sector", "market_cap"})
        if self.sector is not None:
            payload["sector"] = self.sector
        if self.market_cap is not None:
            payload["marketCap"] = self.market_cap
        return payload


class GainersResult(BaseModel):
    date: str
    source: Source
    results: List[GainerRow] = Field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "source": self.source,
            "results": [row.to_payload() for row in self.results],
        }


class TradingDayResult(BaseModel):
    """Grouped daily bars of the most recent date that had any"""

    date: str = Field(..., description="YYYY-MM-DD in exchange time")
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    found: bool = True
    probes: int = 0


class TickerReference(BaseModel):
    ticker: str
    name: Optional[str] = None
    sector: Optional[str] = None
    market_cap: Optional[float] = None
