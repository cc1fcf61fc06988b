import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

MARKET_TIMEZONE = os.getenv("FOREX_MARKET_TIMEZONE", "America/New_York")


def _hour(value, fallback: int) -> int:
    try:
        return max(0, min(23, int(float(value))))
    except (TypeError, ValueError):
        return fallback


MARKET_OPEN_HOUR_SUNDAY = _hour(os.getenv("FOREX_MARKET_OPEN_HOUR_SUNDAY_ET"), 17)
MARKET_CLOSE_HOUR_FRIDAY = _hour(os.getenv("FOREX_MARKET_CLOSE_HOUR_FRIDAY_ET"), 17)


def _market_clock(dt: Optional[datetime]) -> datetime:
    dt = dt or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(ZoneInfo(MARKET_TIMEZONE))


def is_forex_market_open(dt: Optional[datetime] = None) -> bool:
    local = _market_clock(dt)
    day = local.weekday()  # Mon=0 .. Sun=6
    if day <= 3:
        return True
    if day == 4:
        return local.hour < MARKET_CLOSE_HOUR_FRIDAY
    if day == 6:
        return local.hour >= MARKET_OPEN_HOUR_SUNDAY
    return False


def get_forex_market_status(dt: Optional[datetime] = None) -> Dict[str, Any]:
    local = _market_clock(dt)
    is_open = is_forex_market_open(dt)
    if is_open:
        reason = "open"
    elif local.weekday() in (4, 5, 6):
        reason = "weekend"
    else:
        reason = "closed"
    return {
        "is_open": is_open,
        "reason": reason,
        "timezone": MARKET_TIMEZONE,
        "market_day": local.strftime("%a"),
        "market_time": local.strftime("%H:%M:%S"),
    }
