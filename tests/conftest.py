# make `import fxwatch...` work without installing the project
import os
import sys

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import pytest

from fxwatch.common.settings import EngineSettings
from fxwatch.normalizer.engine import MarketEngine

# 2023-11-15T00:00:00Z, aligned on every candle interval
T0 = 1_700_006_400_000


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(persistence_enabled=False)


@pytest.fixture
def engine(settings) -> MarketEngine:
    return MarketEngine(settings)


def trade(engine: MarketEngine, ts_ms: int, price: float, pair: str = "EURUSD", price_type: str = "last", volume: float = 0.0):
    return engine.ingest_trade(
        {"pair": pair, "price": price, "timestamp_ms": ts_ms, "price_type": price_type, "volume": volume}
    )
