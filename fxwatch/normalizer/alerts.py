"""
Windowed move alerts.

Per (pair, window_minutes, price_type) key a tick goes through:

    idle -> candidate (|change| >= threshold)
         -> quarantined (first extreme move, tick marked outlier, no alert)
         -> confirmed (second consecutive extreme move)
         -> emitted -> cooling (cooldown_ms) -> idle

Moves beyond the window's sanity cap are treated as feed corruption and
dropped without touching any state. All times are tick timestamps, so replays
behave the same as live traffic.
"""
import asyncio
import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel

from fxwatch.common import metrics
from fxwatch.common.logs import log_diagnostic
from fxwatch.common.models import Alert, Severity, Tick
from fxwatch.common.settings import HIGH_SEVERITY_PERCENT, EngineSettings
from fxwatch.common.timebuf import TickLedger

log = logging.getLogger(__name__)

AlertKey = Tuple[str, int, str]

MAX_QUERY_LIMIT = 200


class WindowChange(BaseModel):
    window_minutes: int
    reference: Tick
    change_percent: float


def find_reference(ledger: TickLedger, tick: Tick, window_ms: int, tolerance_ms: int) -> Optional[Tick]:
    """Latest usable reference at or before tick - window, or None if missing/stale."""
    ref = ledger.reference(tick.price_type, tick.ts_ms - window_ms)
    if ref is None:
        return None
    if tick.ts_ms - ref.ts_ms > window_ms + tolerance_ms:
        return None
    return ref


def window_change(ledger: TickLedger, tick: Tick, window_minutes: int, tolerance_ms: int) -> Optional[WindowChange]:
    ref = find_reference(ledger, tick, window_minutes * 60_000, tolerance_ms)
    if ref is None or ref.price == 0:
        return None
    change = (tick.price - ref.price) / ref.price * 100.0
    return WindowChange(window_minutes=window_minutes, reference=ref, change_percent=change)


def classify_severity(window_minutes: int, change_percent: float) -> Severity:
    level = HIGH_SEVERITY_PERCENT.get(window_minutes)
    if level is None:
        # windows outside the table escalate from the nearest smaller one
        smaller = [w for w in HIGH_SEVERITY_PERCENT if w <= window_minutes]
        level = HIGH_SEVERITY_PERCENT[max(smaller)] if smaller else min(HIGH_SEVERITY_PERCENT.values())
    return Severity.HIGH if abs(change_percent) >= level else Severity.MEDIUM


def parse_since(since) -> Optional[datetime]:
    if since is None or since == "":
        return None
    if isinstance(since, datetime):
        return since if since.tzinfo else since.replace(tzinfo=timezone.utc)
    if isinstance(since, (int, float)):
        return datetime.fromtimestamp(since / 1000.0, tz=timezone.utc)
    s = str(since).strip()
    if s.isdigit():
        return datetime.fromtimestamp(int(s) / 1000.0, tz=timezone.utc)
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class AlertFeed:
    """Newest-first ring buffer of recent alerts."""
    def __init__(self, capacity: int = 500):
        self._items: Deque[Alert] = deque(maxlen=capacity)

    def __len__(self):
        return len(self._items)

    def push(self, alert: Alert):
        self._items.appendleft(alert)

    def recent(self, pair: Optional[str] = None, limit: int = 50, since=None) -> List[Alert]:
        limit = max(1, min(MAX_QUERY_LIMIT, int(limit)))
        since_dt = parse_since(since)
        out = []
        for a in self._items:
            if pair and a.pair != pair:
                continue
            if since_dt and a.triggered_at < since_dt:
                continue
            out.append(a)
            if len(out) >= limit:
                break
        return out


class AlertBus:
    """
    Fan-out to subscribers through bounded asyncio queues. publish() never
    blocks: a subscriber whose queue is full misses the alert. Publishing from
    another thread than the subscriber's loop is handed over to that loop.
    """
    def __init__(self):
        self._subscribers: List[Tuple[asyncio.Queue, Optional[asyncio.AbstractEventLoop]]] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, maxsize: int = 256) -> asyncio.Queue:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        q: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append((q, loop))
        return q

    def unsubscribe(self, q: asyncio.Queue):
        self._subscribers = [(sq, lp) for sq, lp in self._subscribers if sq is not q]

    @staticmethod
    def _offer(q: asyncio.Queue, alert: Alert) -> bool:
        try:
            q.put_nowait(alert)
            return True
        except asyncio.QueueFull:
            metrics.BUS_DROPS.inc()
            return False

    def publish(self, alert: Alert) -> int:
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        delivered = 0
        for q, loop in list(self._subscribers):
            if loop is None or loop is current:
                delivered += self._offer(q, alert)
            elif not loop.is_closed():
                loop.call_soon_threadsafe(self._offer, q, alert)
                delivered += 1
        return delivered


class AlertEngine:
    def __init__(
        self,
        settings: EngineSettings,
        feed: Optional[AlertFeed] = None,
        bus: Optional[AlertBus] = None,
        persist: Optional[Callable[[Alert], None]] = None,
    ):
        self.settings = settings
        self.feed = feed or AlertFeed(settings.alert_feed_size)
        self.bus = bus or AlertBus()
        self.persist = persist
        self.last_alert_at: Dict[AlertKey, int] = {}
        self.extreme_counts: Dict[AlertKey, int] = {}

    def _reset(self, key: AlertKey):
        self.extreme_counts.pop(key, None)

    def evaluate(self, ledger: TickLedger, tick: Tick) -> List[Alert]:
        s = self.settings
        emitted = []
        for window in s.windows:
            key = (tick.pair, window, tick.price_type.value)
            wc = window_change(ledger, tick, window, s.stale_tolerance_ms)
            if wc is None:
                self._reset(key)
                continue

            threshold = s.thresholds[window]
            magnitude = abs(wc.change_percent)
            if magnitude < threshold:
                self._reset(key)
                continue

            cap = s.caps.get(window)
            if cap is not None and magnitude > cap:
                metrics.ALERTS_SUPPRESSED.labels(reason="sanity_cap").inc()
                log.warning("Discarding %s %sm move of %.4f%% (cap %.2f%%)",
                            tick.pair, window, wc.change_percent, cap)
                continue

            if magnitude >= threshold * s.extreme_multiplier:
                seen = self.extreme_counts.get(key, 0)
                if seen == 0:
                    self.extreme_counts[key] = 1
                    ledger.mark_outlier(tick)
                    metrics.TICKS_OUTLIER.labels(pair=tick.pair, source="quarantine").inc()
                    metrics.ALERTS_SUPPRESSED.labels(reason="quarantine").inc()
                    log_diagnostic(s.diagnostics, event="quarantine", pair=tick.pair, window=window,
                                   change=wc.change_percent, ts=tick.ts_ms)
                    continue
                self._reset(key)
            else:
                self._reset(key)

            last = self.last_alert_at.get(key)
            if last is not None and tick.ts_ms - last < s.cooldown_ms:
                metrics.ALERTS_SUPPRESSED.labels(reason="cooldown").inc()
                continue

            self.last_alert_at[key] = tick.ts_ms
            emitted.append(self._emit(tick, wc))
        return emitted

    def _emit(self, tick: Tick, wc: WindowChange) -> Alert:
        alert = Alert(
            id=uuid.uuid4().hex,
            pair=tick.pair,
            window_minutes=wc.window_minutes,
            price_type=tick.price_type,
            from_price=wc.reference.price,
            to_price=tick.price,
            change_percent=wc.change_percent,
            severity=classify_severity(wc.window_minutes, wc.change_percent),
            triggered_at=datetime.fromtimestamp(tick.ts_ms / 1000.0, tz=timezone.utc),
        )
        if self.persist is not None:
            try:
                self.persist(alert)
            except Exception:
                log.exception("Queueing alert %s for persistence failed", alert.id)
        self.feed.push(alert)
        self.bus.publish(alert)
        metrics.ALERTS_EMITTED.labels(window=str(wc.window_minutes), severity=alert.severity.value).inc()
        log.info("Alert %s %s %sm %+.4f%% (%s -> %s) %s",
                 alert.id, alert.pair, alert.window_minutes, alert.change_percent,
                 alert.from_price, alert.to_price, alert.severity.value)
        return alert

    def recent(self, pair: Optional[str] = None, limit: int = 50, since: Union[str, int, datetime, None] = None) -> List[Alert]:
        return self.feed.recent(pair=pair, limit=limit, since=since)
