from bisect import bisect_left, bisect_right
from typing import Dict, List, Optional

from fxwatch.common.models import PriceType, Tick


class _Series:
    """Ticks of one price type, ordered by ts_ms, with a parallel ts index."""
    __slots__ = ("ts", "ticks")

    def __init__(self):
        self.ts: List[int] = []
        self.ticks: List[Tick] = []


class TickLedger:
    """
    Time-bounded tick history of one pair. Each price type is its own ordered
    series; ticks older than `max_age_ms` behind the newest one are pruned.
    Lookups are "latest value <= ts - horizon", like the old TimeBuffer,
    but skip ticks flagged as outliers.
    """
    def __init__(self, pair: str, max_age_ms: int = 26 * 60 * 60 * 1000):
        self.pair = pair
        self.max_age_ms = max_age_ms
        self._series: Dict[PriceType, _Series] = {}

    def __len__(self):
        return sum(len(s.ticks) for s in self._series.values())

    def last_ts(self, price_type: PriceType) -> Optional[int]:
        s = self._series.get(price_type)
        return s.ts[-1] if s and s.ts else None

    def accepts(self, price_type: PriceType, ts_ms: int) -> bool:
        last = self.last_ts(price_type)
        return last is None or ts_ms >= last

    def append(self, tick: Tick) -> bool:
        """False (and nothing stored) when the tick goes back in time."""
        if not self.accepts(tick.price_type, tick.ts_ms):
            return False
        s = self._series.setdefault(tick.price_type, _Series())
        s.ts.append(tick.ts_ms)
        s.ticks.append(tick)
        self._prune(s)
        return True

    def _prune(self, s: _Series):
        cutoff = s.ts[-1] - self.max_age_ms
        if s.ts[0] >= cutoff:
            return
        i = bisect_left(s.ts, cutoff)
        del s.ts[:i]
        del s.ticks[:i]

    def latest(self, price_type: Optional[PriceType] = None) -> Optional[Tick]:
        if price_type is not None:
            s = self._series.get(price_type)
            return s.ticks[-1] if s and s.ticks else None
        best = None
        for s in self._series.values():
            if s.ticks and (best is None or s.ticks[-1].ts_ms >= best.ts_ms):
                best = s.ticks[-1]
        return best

    def recent(self, price_type: PriceType, n: int, include_outliers: bool = False) -> List[Tick]:
        """Last n ticks of a type, oldest first."""
        s = self._series.get(price_type)
        if not s:
            return []
        out = []
        for t in reversed(s.ticks):
            if t.outlier and not include_outliers:
                continue
            out.append(t)
            if len(out) >= n:
                break
        out.reverse()
        return out

    def reference(self, price_type: PriceType, target_ts: int) -> Optional[Tick]:
        """Most recent non-outlier tick with ts_ms <= target_ts."""
        s = self._series.get(price_type)
        if not s:
            return None
        i = bisect_right(s.ts, target_ts) - 1
        while i >= 0:
            t = s.ticks[i]
            if not t.outlier:
                return t
            i -= 1
        return None

    def mark_outlier(self, tick: Tick) -> bool:
        s = self._series.get(tick.price_type)
        if not s:
            return False
        # newest first: the tick being marked is almost always the last one
        for i in range(len(s.ticks) - 1, -1, -1):
            t = s.ticks[i]
            if t.ts_ms < tick.ts_ms:
                break
            if t is tick or t == tick:
                if not t.outlier:
                    s.ticks[i] = t.model_copy(update={"outlier": True})
                return True
        return False
