"""
Tick validation and outlier detection.

Nothing here raises on bad input: `validate_tick` returns the list of
problems and the caller decides to drop the tick.
"""
import math
from decimal import Decimal, InvalidOperation
from typing import List, Sequence

from pydantic import BaseModel

from fxwatch.common.models import PriceType, Tick
from fxwatch.common.symbol_map import normalize_pair, pip_size_for_pair

OUTLIER_LOOKBACK = 20


class ValidationResult(BaseModel):
    ok: bool
    issues: List[str] = []


def _finite_positive(x) -> bool:
    if isinstance(x, bool):
        return False
    try:
        v = float(x)
    except (TypeError, ValueError):
        return False
    return math.isfinite(v) and v > 0


def is_pip_multiple(pair: str, price: float) -> bool:
    """Exact check that price is an integer number of pips for the pair."""
    try:
        q = Decimal(repr(float(price))) / pip_size_for_pair(pair)
    except (InvalidOperation, ValueError):
        return False
    return q == q.to_integral_value()


def validate_tick(pair, ts_ms, price, price_type) -> ValidationResult:
    issues = []
    canonical = normalize_pair(pair) if pair else None
    if not pair or not isinstance(pair, str):
        issues.append("invalid or missing pair")
    elif canonical is None:
        issues.append(f"unsupported pair={pair}")
    if not _finite_positive(price):
        issues.append("price not positive finite")
    if not _finite_positive(ts_ms):
        issues.append("timestamp invalid")
    try:
        PriceType(price_type)
    except ValueError:
        issues.append(f"unsupported priceType={price_type}")

    # Off-grid prices usually mean a parsing error or another instrument's feed.
    if not issues and not is_pip_multiple(canonical, price):
        issues.append(f"price not multiple of pip ({pip_size_for_pair(canonical)})")

    return ValidationResult(ok=not issues, issues=issues)


def is_tick_outlier(
    recent: Sequence[Tick],
    candidate: Tick,
    max_tick_return: float = 0.005,
    zscore: float = 5.0,
) -> bool:
    same = [t for t in recent if t.price_type == candidate.price_type and not t.outlier]
    if len(same) < 2:
        return False
    window = same[-OUTLIER_LOOKBACK:]

    last_price = window[-1].price
    ret = (candidate.price - last_price) / last_price if last_price else 0.0
    if abs(ret) > max_tick_return:
        return True

    returns = [
        (cur.price - prev.price) / prev.price
        for prev, cur in zip(window, window[1:])
        if prev.price
    ]
    if len(returns) < 2:
        return False
    mean = sum(returns) / len(returns)
    std = math.sqrt(sum((r - mean) ** 2 for r in returns) / len(returns))
    return std > 0 and abs(ret - mean) > zscore * std
