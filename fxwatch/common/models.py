from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, model_validator


class PriceType(str, Enum):
    BID = "bid"
    ASK = "ask"
    MID = "mid"
    LAST = "last"


class Severity(str, Enum):
    MEDIUM = "medium"
    HIGH = "high"


INTERVALS = ("1m", "15m", "1h", "4h", "1d")
WINDOWS_MINUTES = (1, 15, 60, 240, 1440)


class Tick(BaseModel):
    model_config = ConfigDict(frozen=True)

    pair: str  # canonical e.g. EUR/USD
    price_type: PriceType
    price: float
    ts_ms: int
    outlier: bool = False


class TradeIn(BaseModel):
    """Trade as delivered by the transport layer; pair or feed symbol."""
    pair: Optional[str] = None
    symbol: Optional[str] = None
    price: float
    timestamp_ms: Optional[int] = None
    volume: float = 0.0
    price_type: PriceType = PriceType.LAST

    @model_validator(mode="after")
    def _need_instrument(self):
        if not (self.pair or self.symbol):
            raise ValueError("pair or symbol required")
        return self


class QuoteIn(BaseModel):
    pair: Optional[str] = None
    symbol: Optional[str] = None
    bid: float
    ask: float
    timestamp_ms: Optional[int] = None

    @model_validator(mode="after")
    def _need_instrument(self):
        if not (self.pair or self.symbol):
            raise ValueError("pair or symbol required")
        return self


class Candle(BaseModel):
    pair: str
    interval: str
    bucket_start_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


class Alert(BaseModel):
    id: str
    pair: str
    window_minutes: int
    price_type: PriceType
    from_price: float
    to_price: float
    change_percent: float
    severity: Severity
    triggered_at: datetime


class Quote(BaseModel):
    pair: str
    bid: float
    ask: float
    mid: float
    spread: float
    volume: float = 0.0
    timestamp: str


class WindowSnapshot(BaseModel):
    window_minutes: int
    from_price: Optional[float] = None
    to_price: float
    change_percent: Optional[float] = None
    reference_ts_ms: Optional[int] = None


class MarketWindowSnapshot(BaseModel):
    pair: str
    as_of: datetime
    last_price: float
    price_type: PriceType
    windows: List[WindowSnapshot]
