import logging
import threading
import time
from collections import deque
from datetime import datetime, timezone
from typing import Deque, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError

from fxwatch.common import metrics
from fxwatch.common.logs import log_diagnostic
from fxwatch.common.models import (
    Alert,
    Candle,
    MarketWindowSnapshot,
    PriceType,
    Quote,
    QuoteIn,
    Tick,
    TradeIn,
    WindowSnapshot,
)
from fxwatch.common.settings import EngineSettings
from fxwatch.common.symbol_map import decimals_for_pair, normalize_pair, round_to
from fxwatch.common.timebuf import TickLedger
from fxwatch.normalizer.alerts import AlertBus, AlertEngine, AlertFeed, window_change
from fxwatch.normalizer.candles import CandleAggregator
from fxwatch.normalizer.price_cache import PriceCache
from fxwatch.normalizer.validator import is_tick_outlier, validate_tick

log = logging.getLogger(__name__)

# After this many consecutive outliers of one type, a tick that agrees with the
# last of them is taken as the new price level instead of another outlier.
OUTLIER_RUN_RESET = 3


def _now_ms() -> int:
    return int(time.time() * 1000)


class MarketEngine:
    """
    Owns every piece of mutable tick state: ledgers, candles, alert
    cooldowns/counters, the recent alert feed and the pending-alert queue the
    flusher drains. Ingestion never raises and never does I/O.
    """
    def __init__(self, settings: Optional[EngineSettings] = None, bus: Optional[AlertBus] = None):
        self.settings = settings or EngineSettings()
        self.cache = PriceCache()
        self.candles = CandleAggregator(self.settings.candle_retention_ms)
        self.bus = bus or AlertBus()
        self.feed = AlertFeed(self.settings.alert_feed_size)
        self.alerts = AlertEngine(self.settings, feed=self.feed, bus=self.bus, persist=self._queue_alert)

        self._ledgers: Dict[str, TickLedger] = {}
        self._pair_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._outlier_runs: Dict[tuple, int] = {}

        self._pending_lock = threading.Lock()
        self._pending_alerts: Deque[Alert] = deque(maxlen=self.settings.alert_feed_size)
        self._queue_full_warned = False
        self.recording = self.settings.persistence_enabled
        self.candles.persisting = self.recording

    # ---------------- ingestion ----------------

    def ingest_trade(self, trade: Union[TradeIn, dict]) -> List[Alert]:
        try:
            t = trade if isinstance(trade, TradeIn) else TradeIn(**trade)
        except (ValidationError, TypeError) as e:
            metrics.TICKS_REJECTED.labels(reason="malformed").inc()
            log.debug("Dropping malformed trade %r: %s", trade, e)
            return []
        try:
            ts = t.timestamp_ms if t.timestamp_ms is not None else _now_ms()
            raw_pair = t.pair or t.symbol
            return self._ingest_tick(raw_pair, ts, t.price, t.price_type, t.volume) or []
        except Exception:
            metrics.INGEST_ERRORS.inc()
            log.exception("Unexpected error ingesting trade %r", trade)
            return []

    def ingest_quote(self, quote: Union[QuoteIn, dict]) -> List[Alert]:
        try:
            q = quote if isinstance(quote, QuoteIn) else QuoteIn(**quote)
        except (ValidationError, TypeError) as e:
            metrics.TICKS_REJECTED.labels(reason="malformed").inc()
            log.debug("Dropping malformed quote %r: %s", quote, e)
            return []
        try:
            ts = q.timestamp_ms if q.timestamp_ms is not None else _now_ms()
            raw_pair = q.pair or q.symbol
            bid = self._ingest_tick(raw_pair, ts, q.bid, PriceType.BID, 0.0, record=False)
            ask = self._ingest_tick(raw_pair, ts, q.ask, PriceType.ASK, 0.0, record=False)
            if bid is not None and ask is not None:
                # cache and candles follow the mid of a fully accepted quote
                pair = normalize_pair(raw_pair)
                mid = round_to((q.bid + q.ask) / 2.0, decimals_for_pair(pair))
                self.cache.record_trade(pair, mid, ts)
                self.candles.record(pair, int(ts), mid, 0.0)
                metrics.DIRTY_CANDLES.set(self.candles.dirty_count())
            return (bid or []) + (ask or [])
        except Exception:
            metrics.INGEST_ERRORS.inc()
            log.exception("Unexpected error ingesting quote %r", quote)
            return []

    def _pair_lock(self, pair: str) -> threading.Lock:
        lock = self._pair_locks.get(pair)
        if lock is None:
            with self._locks_guard:
                lock = self._pair_locks.setdefault(pair, threading.Lock())
        return lock

    def ledger(self, pair: str) -> Optional[TickLedger]:
        return self._ledgers.get(normalize_pair(pair) or "")

    def _ingest_tick(self, raw_pair, ts_ms, price, price_type, volume, record: bool = True) -> Optional[List[Alert]]:
        """Alerts raised by an accepted tick, or None when the tick is rejected."""
        res = validate_tick(raw_pair, ts_ms, price, price_type)
        if not res.ok:
            metrics.TICKS_REJECTED.labels(reason="invalid").inc()
            log.debug("Rejected tick pair=%s ts=%s price=%s type=%s: %s",
                      raw_pair, ts_ms, price, price_type, "; ".join(res.issues))
            return None

        pair = normalize_pair(raw_pair)
        ptype = PriceType(price_type)
        with self._pair_lock(pair):
            ledger = self._ledgers.get(pair)
            if ledger is None:
                ledger = TickLedger(pair, self.settings.tick_retention_ms)
                self._ledgers[pair] = ledger

            if not ledger.accepts(ptype, int(ts_ms)):
                metrics.TICKS_REJECTED.labels(reason="out_of_order").inc()
                log.debug("Rejected out-of-order tick pair=%s type=%s ts=%s last=%s",
                          pair, ptype.value, ts_ms, ledger.last_ts(ptype))
                return None

            tick = Tick(pair=pair, price_type=ptype, price=float(price), ts_ms=int(ts_ms))
            outlier = self._check_outlier(ledger, tick)
            if outlier:
                tick = tick.model_copy(update={"outlier": True})
                metrics.TICKS_OUTLIER.labels(pair=pair, source="statistical").inc()
                log_diagnostic(self.settings.diagnostics, event="outlier", pair=pair,
                               price_type=ptype.value, price=tick.price, ts=tick.ts_ms)

            ledger.append(tick)
            metrics.TICKS_ACCEPTED.labels(pair=pair, price_type=ptype.value).inc()

            # cache and candles follow raw market action, outlier or not
            if record:
                self.cache.record_trade(pair, tick.price, tick.ts_ms)
                self.candles.record(pair, tick.ts_ms, tick.price, volume)
                metrics.DIRTY_CANDLES.set(self.candles.dirty_count())

            return self.alerts.evaluate(ledger, tick)

    def _check_outlier(self, ledger: TickLedger, tick: Tick) -> bool:
        s = self.settings
        recent = ledger.recent(tick.price_type, s.outlier_lookback)
        flagged = is_tick_outlier(recent, tick, s.max_tick_return, s.outlier_zscore)
        run_key = (tick.pair, tick.price_type)
        if not flagged:
            self._outlier_runs.pop(run_key, None)
            return False

        run = self._outlier_runs.get(run_key, 0)
        prev = ledger.latest(tick.price_type)
        if run >= OUTLIER_RUN_RESET and prev is not None and prev.price:
            if abs(tick.price - prev.price) / prev.price <= s.max_tick_return:
                log.info("Accepting new %s %s level %.5f after %d outliers",
                         tick.pair, tick.price_type.value, tick.price, run)
                self._outlier_runs.pop(run_key, None)
                return False
        self._outlier_runs[run_key] = run + 1
        return True

    # ---------------- persistence hand-off ----------------

    def _queue_alert(self, alert: Alert):
        if not self.recording:
            return
        with self._pending_lock:
            if len(self._pending_alerts) == self._pending_alerts.maxlen:
                if not self._queue_full_warned:
                    log.warning("Pending alert queue full, dropping oldest unpersisted alerts")
                    self._queue_full_warned = True
            else:
                self._queue_full_warned = False
            self._pending_alerts.append(alert)

    def pending_alerts(self) -> List[Alert]:
        with self._pending_lock:
            return list(self._pending_alerts)

    def ack_alert(self, alert: Alert):
        with self._pending_lock:
            try:
                self._pending_alerts.remove(alert)
            except ValueError:
                pass

    def stop_recording(self):
        """Nothing will drain candles or alerts any more: stop queueing them."""
        self.recording = False
        self.candles.persisting = False
        self.drop_pending_alerts()

    def drop_pending_alerts(self):
        with self._pending_lock:
            self._pending_alerts.clear()
            self._queue_full_warned = False

    # ---------------- queries ----------------

    def get_live_rates_from_cache(self) -> List[Quote]:
        return self.cache.get_live_rates()

    def get_history(self, pair: str, points: int = 60) -> List[dict]:
        return self.cache.get_history(pair, points)

    def get_recent_market_alerts(self, pair: Optional[str] = None, limit: int = 50, since=None) -> List[Alert]:
        canonical = normalize_pair(pair) if pair else None
        if pair and canonical is None:
            return []
        return self.feed.recent(pair=canonical, limit=limit, since=since)

    def get_candles(self, pair: str, interval: str = "1m", limit: int = 100) -> List[Candle]:
        canonical = normalize_pair(pair)
        if canonical is None:
            return []
        return self.candles.get_candles(canonical, interval, limit)

    def get_market_window_snapshot(self, pair: str, windows: Iterable[int] = None) -> Optional[MarketWindowSnapshot]:
        canonical = normalize_pair(pair)
        if canonical is None:
            return None
        windows = list(windows) if windows else self.settings.windows
        with self._pair_lock(canonical):
            ledger = self._ledgers.get(canonical)
            last = ledger.latest() if ledger else None
            if last is None:
                return None
            rows = []
            for w in windows:
                wc = window_change(ledger, last, int(w), self.settings.stale_tolerance_ms)
                rows.append(WindowSnapshot(
                    window_minutes=int(w),
                    from_price=wc.reference.price if wc else None,
                    to_price=last.price,
                    change_percent=wc.change_percent if wc else None,
                    reference_ts_ms=wc.reference.ts_ms if wc else None,
                ))
        return MarketWindowSnapshot(
            pair=canonical,
            as_of=datetime.fromtimestamp(last.ts_ms / 1000.0, tz=timezone.utc),
            last_price=last.price,
            price_type=last.price_type,
            windows=rows,
        )
