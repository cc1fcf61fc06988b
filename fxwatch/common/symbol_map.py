import re
from decimal import Decimal
from typing import Optional

# Canonical pair -> feed symbol
PAIR_TO_SYMBOL = {
    "EUR/USD": "FX:EURUSD",
    "GBP/USD": "FX:GBPUSD",
    "USD/JPY": "FX:USDJPY",
    "USD/CHF": "FX:USDCHF",
    "AUD/USD": "FX:AUDUSD",
    "USD/CAD": "FX:USDCAD",
    "NZD/USD": "FX:NZDUSD",
    "EUR/GBP": "FX:EURGBP",
    "EUR/JPY": "FX:EURJPY",
    "GBP/JPY": "FX:GBPJPY",
    "EUR/CHF": "FX:EURCHF",
    "AUD/JPY": "FX:AUDJPY",
    "CAD/JPY": "FX:CADJPY",
    "CHF/JPY": "FX:CHFJPY",
    "AUD/CAD": "FX:AUDCAD",
    "NZD/JPY": "FX:NZDJPY",
    "XAU/USD": "FX:XAUUSD",
}

SYMBOL_TO_PAIR = {s: p for p, s in PAIR_TO_SYMBOL.items()}

# Fallback mids used before any tick has arrived for a pair.
BASE_PRICES = {
    "EUR/USD": 1.0842,
    "GBP/USD": 1.2719,
    "USD/JPY": 148.22,
    "USD/CHF": 0.8732,
    "AUD/USD": 0.6614,
    "USD/CAD": 1.3465,
    "NZD/USD": 0.6111,
    "EUR/GBP": 0.8524,
    "EUR/JPY": 160.7,
    "GBP/JPY": 188.4,
    "EUR/CHF": 0.9527,
    "AUD/JPY": 98.1,
    "CAD/JPY": 110.2,
    "CHF/JPY": 169.7,
    "AUD/CAD": 0.8904,
    "NZD/JPY": 90.5,
    "XAU/USD": 2925.0,
}

SUPPORTED_PAIRS = list(BASE_PRICES)

_SPLIT = re.compile(r"[/\-_ ]")


def normalize_pair(raw) -> Optional[str]:
    """
    Accepts "EUR/USD", "EURUSD", "eur-usd", "EUR_USD" or a feed symbol
    "FX:EURUSD" and returns the canonical pair, or None when unsupported.
    """
    if not isinstance(raw, str):
        return None
    s = raw.strip().upper()
    if not s:
        return None
    if s in SYMBOL_TO_PAIR:
        return SYMBOL_TO_PAIR[s]
    if ":" in s:
        s = s.split(":", 1)[1]
    s = _SPLIT.sub("", s)
    if len(s) != 6:
        return None
    pair = f"{s[:3]}/{s[3:]}"
    return pair if pair in PAIR_TO_SYMBOL else None


def is_jpy_pair(pair: str) -> bool:
    return "JPY" in pair


def decimals_for_pair(pair: str) -> int:
    return 3 if is_jpy_pair(pair) else 5


def pip_size_for_pair(pair: str) -> Decimal:
    return Decimal("0.01") if is_jpy_pair(pair) else Decimal("0.0001")


def round_to(value: float, decimals: int) -> float:
    return round(float(value), decimals)
