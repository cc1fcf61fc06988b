import pytest

from fxwatch.common.models import INTERVALS
from fxwatch.normalizer.candles import CandleAggregator, bucket_start

from conftest import T0, trade


@pytest.mark.parametrize(
    "interval,offset_ms,expected_offset",
    [
        ("1m", 59_999, 0),
        ("1m", 60_000, 60_000),
        ("15m", 16 * 60_000, 15 * 60_000),
        ("1h", 61 * 60_000, 60 * 60_000),
        ("4h", 5 * 3_600_000, 4 * 3_600_000),
        ("1d", 23 * 3_600_000 + 59 * 60_000, 0),
        ("1d", 24 * 3_600_000, 24 * 3_600_000),
    ],
)
def test_bucket_start_alignment(interval, offset_ms, expected_offset):
    assert bucket_start(T0 + offset_ms, interval) == T0 + expected_offset


def test_first_tick_opens_bucket_and_later_ticks_fold_in():
    agg = CandleAggregator()
    agg.update("EUR/USD", "1m", T0 + 1000, 1.1000, 2)
    agg.update("EUR/USD", "1m", T0 + 2000, 1.1010, 3)
    agg.update("EUR/USD", "1m", T0 + 3000, 1.0990, 1)
    agg.update("EUR/USD", "1m", T0 + 4000, 1.1005, 0)

    c = agg.get("EUR/USD", "1m", T0)
    assert (c.open, c.high, c.low, c.close, c.volume) == (1.1000, 1.1010, 1.0990, 1.1005, 6)
    assert c.bucket_start_ms == T0


def test_replaying_a_tick_accumulates_volume():
    agg = CandleAggregator()
    agg.update("EUR/USD", "1m", T0, 1.1000, 5)
    agg.update("EUR/USD", "1m", T0, 1.1000, 5)
    c = agg.get("EUR/USD", "1m", T0)
    assert c.volume == 10
    assert (c.open, c.high, c.low, c.close) == (1.1, 1.1, 1.1, 1.1)


def test_record_updates_every_interval_and_marks_dirty():
    agg = CandleAggregator()
    agg.record("EUR/USD", T0 + 90_000, 1.2000, 1)
    assert len(agg) == len(INTERVALS)
    assert agg.dirty_count() == len(INTERVALS)
    assert agg.get("EUR/USD", "1m", T0 + 90_000).bucket_start_ms == T0 + 60_000
    assert agg.get("EUR/USD", "1d", T0 + 90_000).bucket_start_ms == T0


def test_mark_clean_is_version_checked():
    agg = CandleAggregator()
    agg.update("EUR/USD", "1m", T0, 1.1, 1)
    [(key, version, candle)] = agg.snapshot_dirty()
    agg.update("EUR/USD", "1m", T0 + 1, 1.2, 1)  # changes after the snapshot

    assert not agg.mark_clean(key, version)
    assert agg.dirty_count() == 1
    [(_, newer, _)] = agg.snapshot_dirty()
    assert agg.mark_clean(key, newer)
    assert agg.dirty_count() == 0
    assert candle.close == 1.1  # snapshot was a copy


def test_get_candles_oldest_first_with_limit():
    agg = CandleAggregator()
    for i in range(5):
        agg.update("EUR/USD", "1m", T0 + i * 60_000, 1.1 + i / 10000)
    rows = agg.get_candles("EUR/USD", "1m", limit=3)
    assert [r.bucket_start_ms for r in rows] == [T0 + 120_000, T0 + 180_000, T0 + 240_000]


def test_clean_buckets_past_retention_are_evicted():
    agg = CandleAggregator(retention_ms=60 * 60_000)
    agg.record("EUR/USD", T0, 1.1)
    for key, version, _ in agg.snapshot_dirty():
        agg.mark_clean(key, version)
    agg.record("EUR/USD", T0 + 3 * 3_600_000, 1.2)
    assert agg.get("EUR/USD", "1m", T0) is None
    assert agg.get("EUR/USD", "1d", T0) is not None  # day bucket still open


def test_engine_updates_candles_for_every_accepted_tick(engine):
    trade(engine, T0, 1.1000, volume=2)
    trade(engine, T0 + 1000, 1.1002, volume=3)
    c = engine.candles.get("EUR/USD", "15m", T0)
    assert c.high == 1.1002
    assert c.volume == 5
