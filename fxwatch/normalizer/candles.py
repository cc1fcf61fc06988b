import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from fxwatch.common.models import INTERVALS, Candle

INTERVAL_MS = {
    "1m": 60_000,
    "15m": 15 * 60_000,
    "1h": 60 * 60_000,
    "4h": 4 * 60 * 60_000,
    "1d": 24 * 60 * 60_000,
}

CandleKey = Tuple[str, str, int]

EVICT_EVERY_MS = 60_000


def bucket_start(ts_ms: int, interval: str) -> int:
    if interval == "1d":
        d = datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc)
        midnight = datetime(d.year, d.month, d.day, tzinfo=timezone.utc)
        return int(midnight.timestamp() * 1000)
    size = INTERVAL_MS[interval]
    return (int(ts_ms) // size) * size


class CandleAggregator:
    """
    OHLCV buckets for every interval, kept in memory. Each mutation bumps a
    per-key version in the dirty map; the flusher clears a key only if the
    version it persisted is still current.
    """
    def __init__(self, retention_ms: int = 48 * 60 * 60 * 1000):
        self.retention_ms = retention_ms
        self._candles: Dict[CandleKey, Candle] = {}
        self._dirty: Dict[CandleKey, int] = {}
        self._version = 0
        self._lock = threading.Lock()
        self._last_evict_ms = 0
        # off when nothing will ever persist the buckets
        self.persisting = True

    def __len__(self):
        return len(self._candles)

    def update(self, pair: str, interval: str, ts_ms: int, price: float, volume: float = 0.0) -> Candle:
        start = bucket_start(ts_ms, interval)
        key = (pair, interval, start)
        v = float(volume or 0.0)
        with self._lock:
            c = self._candles.get(key)
            if c is None:
                c = Candle(
                    pair=pair, interval=interval, bucket_start_ms=start,
                    open=price, high=price, low=price, close=price, volume=v,
                )
                self._candles[key] = c
            else:
                c.high = max(c.high, price)
                c.low = min(c.low, price)
                c.close = price
                c.volume += v
            self._version += 1
            self._dirty[key] = self._version
            return c

    def record(self, pair: str, ts_ms: int, price: float, volume: float = 0.0):
        for interval in INTERVALS:
            self.update(pair, interval, ts_ms, price, volume)
        self._evict(ts_ms)

    def _evict(self, now_ms: int):
        if now_ms - self._last_evict_ms < EVICT_EVERY_MS:
            return
        self._last_evict_ms = now_ms
        cutoff = now_ms - self.retention_ms
        with self._lock:
            # unpersisted buckets are kept unless nothing will ever persist them
            stale = [
                k for k in self._candles
                if k[2] + INTERVAL_MS[k[1]] < cutoff and (k not in self._dirty or not self.persisting)
            ]
            for k in stale:
                del self._candles[k]
                self._dirty.pop(k, None)

    def get(self, pair: str, interval: str, ts_ms: int) -> Optional[Candle]:
        with self._lock:
            c = self._candles.get((pair, interval, bucket_start(ts_ms, interval)))
            return c.model_copy() if c else None

    def get_candles(self, pair: str, interval: str, limit: int = 100) -> List[Candle]:
        with self._lock:
            rows = [c.model_copy() for k, c in self._candles.items() if k[0] == pair and k[1] == interval]
        rows.sort(key=lambda c: c.bucket_start_ms)
        return rows[-limit:] if limit > 0 else []

    # ---- flusher side ----

    def dirty_count(self) -> int:
        with self._lock:
            return len(self._dirty)

    def snapshot_dirty(self) -> List[Tuple[CandleKey, int, Candle]]:
        with self._lock:
            return [(k, ver, self._candles[k].model_copy()) for k, ver in self._dirty.items()]

    def mark_clean(self, key: CandleKey, version: int) -> bool:
        with self._lock:
            if self._dirty.get(key) != version:
                return False
            del self._dirty[key]
            return True
