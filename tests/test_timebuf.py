from fxwatch.common.models import PriceType, Tick
from fxwatch.common.timebuf import TickLedger


def tick(ts_ms, price=1.0, price_type=PriceType.LAST, outlier=False):
    return Tick(pair="EUR/USD", price_type=price_type, price=price, ts_ms=ts_ms, outlier=outlier)


def test_timestamps_non_decreasing_per_price_type():
    ledger = TickLedger("EUR/USD")
    assert ledger.append(tick(1000))
    assert ledger.append(tick(1000, 1.0001))  # equal timestamps are fine
    assert ledger.append(tick(2000))
    assert not ledger.append(tick(1500))
    assert len(ledger) == 3
    assert ledger.last_ts(PriceType.LAST) == 2000


def test_price_types_are_ordered_independently():
    ledger = TickLedger("EUR/USD")
    assert ledger.append(tick(5000, price_type=PriceType.BID))
    assert ledger.append(tick(1000, price_type=PriceType.ASK))
    assert not ledger.append(tick(4000, price_type=PriceType.BID))
    assert ledger.latest().price_type == PriceType.BID


def test_prunes_by_age_not_count():
    ledger = TickLedger("EUR/USD", max_age_ms=10_000)
    for ts in range(0, 30_000, 1000):
        ledger.append(tick(ts))
    assert len(ledger) == 11
    assert ledger.recent(PriceType.LAST, 100)[0].ts_ms == 19_000


def test_reference_is_latest_at_or_before_target_and_skips_outliers():
    ledger = TickLedger("EUR/USD")
    ledger.append(tick(0, 1.0))
    ledger.append(tick(1000, 1.1))
    ledger.append(tick(2000, 1.2, outlier=True))
    ledger.append(tick(3000, 1.3))

    assert ledger.reference(PriceType.LAST, 1000).price == 1.1
    assert ledger.reference(PriceType.LAST, 2500).price == 1.1
    assert ledger.reference(PriceType.LAST, 3000).price == 1.3
    assert ledger.reference(PriceType.LAST, -1) is None
    assert ledger.reference(PriceType.BID, 3000) is None


def test_mark_outlier_replaces_entry():
    ledger = TickLedger("EUR/USD")
    ledger.append(tick(0, 1.0))
    t = tick(1000, 1.5)
    ledger.append(t)

    assert ledger.mark_outlier(t)
    assert ledger.latest(PriceType.LAST).outlier
    assert ledger.reference(PriceType.LAST, 1000).price == 1.0
    assert t.outlier is False  # the accepted tick itself is immutable


def test_recent_is_oldest_first_and_excludes_outliers():
    ledger = TickLedger("EUR/USD")
    for i in range(5):
        ledger.append(tick(i * 1000, 1.0 + i / 10000, outlier=(i == 3)))
    got = ledger.recent(PriceType.LAST, 3)
    assert [t.ts_ms for t in got] == [1000, 2000, 4000]
    assert len(ledger.recent(PriceType.LAST, 10, include_outliers=True)) == 5
