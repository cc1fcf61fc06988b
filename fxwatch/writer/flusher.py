import asyncio
import logging
import time
from typing import Callable, Optional

import asyncpg

from fxwatch.common import metrics
from fxwatch.common.errors import PersistenceDisabled
from fxwatch.common.settings import EngineSettings
from fxwatch.writer.store import PgStore

log = logging.getLogger(__name__)

TRANSIENT_LOG_EVERY_S = 30.0

_TRANSIENT_MARKERS = (
    "connection refused",
    "connection reset",
    "connection was closed",
    "connection is closed",
    "timeout",
    "timed out",
    "econnrefused",
    "econnreset",
    "etimedout",
)


def is_transient(exc: BaseException) -> bool:
    """Connectivity and timeout errors are retried; anything else is not."""
    if isinstance(exc, (OSError, asyncio.TimeoutError)):
        return True
    if isinstance(exc, (asyncpg.PostgresConnectionError, asyncpg.InterfaceError, asyncpg.CannotConnectNowError)):
        return True
    sqlstate = getattr(exc, "sqlstate", None) or ""
    if sqlstate.startswith("08") or sqlstate.startswith("57P"):
        return True
    msg = str(exc).lower()
    return any(m in msg for m in _TRANSIENT_MARKERS)


class Flusher:
    """
    Periodically drains dirty candles and pending alerts of a MarketEngine
    into a store. Transient errors pause flushing for retry_ms; anything else
    disables it for the life of the process.
    """
    def __init__(self, engine, store=None, settings: Optional[EngineSettings] = None,
                 clock: Callable[[], float] = time.time, disabled_reason: Optional[str] = None):
        self.engine = engine
        self.store = store
        self.settings = settings or engine.settings
        self.clock = clock
        self.enabled = True
        self.disabled_reason: Optional[str] = None
        self.retry_after: Optional[float] = None
        self._last_transient_log: Optional[float] = None
        self._flushing = False
        self._task: Optional[asyncio.Task] = None

        if disabled_reason:
            self.disable(disabled_reason, level=logging.WARNING)
        elif not self.settings.persistence_enabled:
            self.disable("persistence disabled by MARKET_RECORDER_ENABLED=false", level=logging.INFO)
        elif store is None:
            self.disable("no durable store configured", level=logging.WARNING)

    def disable(self, reason: str, level: int = logging.ERROR):
        if self.enabled:
            log.log(level, "Market recorder disabled: %s (candles stay in memory only)", reason)
        self.enabled = False
        self.disabled_reason = reason
        self.engine.stop_recording()

    async def close_store(self):
        store, self.store = self.store, None
        if store is None:
            return
        try:
            await store.close()
        except Exception as e:
            log.warning("Closing the store failed: %s", e)

    def status(self) -> dict:
        return {
            "enabled": self.enabled,
            "disabled_reason": self.disabled_reason,
            "retry_after": self.retry_after,
            "dirty_candles": self.engine.candles.dirty_count(),
            "pending_alerts": len(self.engine.pending_alerts()),
        }

    def _on_transient(self, exc: BaseException, now: float):
        metrics.FLUSH_ERRORS.labels(kind="transient").inc()
        retry_s = self.settings.retry_ms / 1000.0
        self.retry_after = now + retry_s
        last = self._last_transient_log
        if last is None or now - last >= TRANSIENT_LOG_EVERY_S:
            self._last_transient_log = now
            log.warning("Store unreachable, pausing flush for %.0fs: %s", retry_s, exc)

    async def flush_once(self, now: Optional[float] = None) -> int:
        """One pass; returns how many rows were written."""
        if not self.enabled or self._flushing:
            return 0
        now = self.clock() if now is None else now
        if self.retry_after is not None and now < self.retry_after:
            return 0
        self.retry_after = None

        self._flushing = True
        written = 0
        try:
            with metrics.FLUSH_LATENCY.time():
                for key, version, candle in self.engine.candles.snapshot_dirty():
                    await self.store.upsert_candle(candle)
                    self.engine.candles.mark_clean(key, version)
                    written += 1
                for alert in self.engine.pending_alerts():
                    await self.store.insert_alert(alert)
                    self.engine.ack_alert(alert)
                    written += 1
            metrics.LAST_FLUSH_TS.set(int(time.time()))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if is_transient(e):
                self._on_transient(e, now)
            else:
                metrics.FLUSH_ERRORS.labels(kind="permanent").inc()
                self.disable(f"flush failed: {e}")
        finally:
            self._flushing = False
            metrics.DIRTY_CANDLES.set(self.engine.candles.dirty_count())
        if not self.enabled:
            await self.close_store()
        return written

    async def run(self):
        interval = self.settings.flush_ms / 1000.0
        while self.enabled:
            await asyncio.sleep(interval)
            await self.flush_once()

    def start(self) -> Optional[asyncio.Task]:
        if not self.enabled:
            return None
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush_once()
        await self.close_store()


async def open_flusher(engine, dsn: Optional[str] = None) -> Flusher:
    """Connect the store if possible; an unreachable store yields a disabled flusher."""
    if not engine.settings.persistence_enabled:
        return Flusher(engine, None)
    try:
        store = await PgStore.connect(dsn)
    except PersistenceDisabled as e:
        return Flusher(engine, None, disabled_reason=str(e))
    except Exception as e:
        return Flusher(engine, None, disabled_reason=f"store unavailable at startup: {e}")
    return Flusher(engine, store)
