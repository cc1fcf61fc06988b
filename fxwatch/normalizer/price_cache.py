import logging
import math
import time
from collections import deque
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional, Tuple

from fxwatch.common.errors import UnsupportedPairError
from fxwatch.common.models import Quote
from fxwatch.common.symbol_map import (
    BASE_PRICES,
    SUPPORTED_PAIRS,
    decimals_for_pair,
    normalize_pair,
    pip_size_for_pair,
    round_to,
)

log = logging.getLogger(__name__)

MAX_HISTORY_POINTS = 2000
SPREAD_PIPS = 1.5


def _iso(ts_ms: int) -> str:
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).isoformat()


def build_rate(pair: str, price: float, ts_ms: int) -> Quote:
    half = float(pip_size_for_pair(pair)) * SPREAD_PIPS / 2.0
    decimals = decimals_for_pair(pair)
    bid = round_to(price - half, decimals)
    ask = round_to(price + half, decimals)
    return Quote(
        pair=pair,
        bid=bid,
        ask=ask,
        mid=round_to(price, decimals),
        spread=round_to(ask - bid, decimals),
        timestamp=_iso(ts_ms),
    )


class PriceCache:
    """
    Last-write-wins latest price per instrument, plus a short history.
    Feeds rate displays only; the alert engine keeps its own ledger.
    """
    def __init__(self, max_history: int = MAX_HISTORY_POINTS):
        self._live: Dict[str, Tuple[float, int]] = {}
        self._history: Dict[str, Deque[Tuple[float, int]]] = {}
        self._max_history = max_history

    def record_trade(self, pair: str, price: float, ts_ms: Optional[int] = None) -> bool:
        pair = normalize_pair(pair)
        if pair is None:
            return False
        try:
            price = float(price)
        except (TypeError, ValueError):
            return False
        if not math.isfinite(price):
            return False
        ts = int(ts_ms) if ts_ms is not None else int(time.time() * 1000)

        self._live[pair] = (price, ts)
        hist = self._history.get(pair)
        if hist is None:
            hist = deque(maxlen=self._max_history)
            self._history[pair] = hist
        hist.append((price, ts))
        return True

    def record_quote(self, pair: str, bid: float, ask: float, ts_ms: Optional[int] = None) -> bool:
        try:
            b, a = float(bid), float(ask)
        except (TypeError, ValueError):
            return False
        if not (math.isfinite(b) and math.isfinite(a)):
            return False
        return self.record_trade(pair, (b + a) / 2.0, ts_ms)

    def last(self, pair: str) -> Optional[Tuple[float, int]]:
        return self._live.get(normalize_pair(pair) or "")

    def get_live_rates(self) -> List[Quote]:
        now = int(time.time() * 1000)
        out = []
        for pair in SUPPORTED_PAIRS:
            price, ts = self._live.get(pair, (BASE_PRICES[pair], now))
            out.append(build_rate(pair, price, ts))
        return out

    def get_history(self, pair: str, points: int = 60) -> List[dict]:
        canonical = normalize_pair(pair)
        if canonical is None:
            raise UnsupportedPairError(pair)
        hist = self._history.get(canonical) or ()
        points = max(0, int(points))
        tail = list(hist)[-points:] if points else []
        return [{"timestamp": _iso(ts), "price": price} for price, ts in tail]
