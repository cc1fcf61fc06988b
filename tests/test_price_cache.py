import pytest

from fxwatch.common.errors import UnsupportedPairError
from fxwatch.common.symbol_map import BASE_PRICES, SUPPORTED_PAIRS
from fxwatch.normalizer.price_cache import PriceCache


def rates_by_pair(cache):
    return {q.pair: q for q in cache.get_live_rates()}


def test_falls_back_to_static_prices():
    rates = rates_by_pair(PriceCache())
    assert set(rates) == set(SUPPORTED_PAIRS)
    eur = rates["EUR/USD"]
    assert eur.mid == BASE_PRICES["EUR/USD"]
    assert eur.bid < eur.mid < eur.ask
    assert eur.spread == pytest.approx(0.00015, abs=2e-5)


def test_trade_by_symbol_or_pair_updates_mid():
    cache = PriceCache()
    assert cache.record_trade("FX:EURUSD", 1.1, 1_700_000_000_000)
    assert rates_by_pair(cache)["EUR/USD"].mid == 1.1
    assert cache.record_trade("GBP-USD", 1.25, 1_700_000_000_000)
    gbp = rates_by_pair(cache)["GBP/USD"]
    assert gbp.mid == 1.25
    assert gbp.timestamp.startswith("2023-11-14T22:13:20")


def test_quote_records_mid():
    cache = PriceCache()
    assert cache.record_quote("EUR/USD", 1.1000, 1.1002, 1000)
    assert cache.last("EURUSD")[0] == pytest.approx(1.1001)


def test_unknown_or_non_finite_inputs_are_ignored():
    cache = PriceCache()
    assert not cache.record_trade("FX:DOGEUSD", 1.0)
    assert not cache.record_trade("EUR/USD", float("nan"))
    assert not cache.record_quote("EUR/USD", "x", 1.0)
    assert cache.last("EUR/USD") is None


def test_jpy_rates_use_jpy_pip():
    cache = PriceCache()
    cache.record_trade("USD/JPY", 150.0, 1000)
    q = rates_by_pair(cache)["USD/JPY"]
    assert q.spread == pytest.approx(0.015, abs=1.1e-3)


def test_history_is_capped_and_oldest_first():
    cache = PriceCache(max_history=5)
    for i in range(10):
        cache.record_trade("EUR/USD", 1.0 + i / 10000, 1000 + i)
    hist = cache.get_history("EUR/USD", points=3)
    assert [round(h["price"], 4) for h in hist] == [1.0007, 1.0008, 1.0009]
    assert len(cache.get_history("EUR/USD", points=100)) == 5
    assert cache.get_history("GBP/USD", points=10) == []


def test_history_rejects_unsupported_pair():
    with pytest.raises(UnsupportedPairError):
        PriceCache().get_history("ABC/XYZ")
