import os
from typing import Dict

from pydantic import BaseModel, Field

DEFAULT_THRESHOLDS = {1: 0.12, 15: 0.30, 60: 0.50, 240: 0.80, 1440: 1.20}
DEFAULT_CAPS = {1: 2.0, 15: 4.0, 60: 6.0, 240: 8.0, 1440: 12.0}
# |change| at or above this is "high" severity, below it "medium"
HIGH_SEVERITY_PERCENT = {1: 0.30, 15: 0.60, 60: 1.00, 240: 1.50, 1440: 2.00}

_WINDOW_ENV_SUFFIX = {1: "1M", 15: "15M", 60: "1H", 240: "4H", 1440: "1D"}


class EngineSettings(BaseModel):
    """
    Tunables of the tick engine. Percent values are percents (0.12 == 0.12%),
    except max_tick_return which is a fraction (0.005 == 0.5%).
    """
    thresholds: Dict[int, float] = Field(default_factory=lambda: dict(DEFAULT_THRESHOLDS))
    caps: Dict[int, float] = Field(default_factory=lambda: dict(DEFAULT_CAPS))
    extreme_multiplier: float = 5.0
    cooldown_ms: int = 10 * 60 * 1000
    stale_tolerance_ms: int = 5000
    max_tick_return: float = 0.005
    outlier_zscore: float = 5.0
    outlier_lookback: int = 20
    flush_ms: int = 5000
    retry_ms: int = 30000
    persistence_enabled: bool = True
    tick_retention_ms: int = 26 * 60 * 60 * 1000
    candle_retention_ms: int = 48 * 60 * 60 * 1000
    alert_feed_size: int = 500
    diagnostics: bool = False

    @property
    def windows(self):
        return sorted(self.thresholds)

    @classmethod
    def from_env(cls) -> "EngineSettings":
        thresholds = {}
        caps = {}
        for minutes, suffix in _WINDOW_ENV_SUFFIX.items():
            thresholds[minutes] = float(os.getenv(f"MARKET_ALERT_THRESHOLD_{suffix}", DEFAULT_THRESHOLDS[minutes]))
            caps[minutes] = float(os.getenv(f"MARKET_ALERT_CAP_{suffix}", DEFAULT_CAPS[minutes]))

        return cls(
            thresholds=thresholds,
            caps=caps,
            extreme_multiplier=float(os.getenv("MARKET_ALERT_EXTREME_MULTIPLIER", "5")),
            cooldown_ms=int(os.getenv("MARKET_ALERT_COOLDOWN_MS", "600000")),
            stale_tolerance_ms=int(os.getenv("MARKET_ALERT_STALE_TOLERANCE_MS", "5000")),
            max_tick_return=float(os.getenv("MARKET_ALERT_MAX_TICK_RETURN_PERCENT", "0.005")),
            outlier_zscore=float(os.getenv("MARKET_ALERT_OUTLIER_ZSCORE", "5")),
            flush_ms=int(os.getenv("MARKET_RECORDER_FLUSH_MS", "5000")),
            retry_ms=int(os.getenv("MARKET_RECORDER_RETRY_MS", "30000")),
            persistence_enabled=os.getenv("MARKET_RECORDER_ENABLED", "true").lower() != "false",
            tick_retention_ms=int(os.getenv("MARKET_TICK_RETENTION_MS", str(26 * 60 * 60 * 1000))),
            candle_retention_ms=int(os.getenv("MARKET_CANDLE_RETENTION_MS", str(48 * 60 * 60 * 1000))),
            alert_feed_size=int(os.getenv("MARKET_ALERT_FEED_SIZE", "500")),
            diagnostics=os.getenv("MARKET_ALERT_DIAGNOSTICS", "false").lower() == "true",
        )
