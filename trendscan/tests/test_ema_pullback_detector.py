from dataclasses import replace

import pytest

from trendscan.core.config import StrategyParams
from trendscan.strategy.base import Direction
from trendscan.strategy.ema_pullback import EmaPullbackDetector
from trendscan.tests.fakes import (
    FIFTEEN_MIN_MS,
    alternating_closes,
    long_setup,
    make_candles,
    trend_closes,
)


def _params(**kw) -> StrategyParams:
    base = dict(ema_short=20, ema_long=60, rsi_period=14, rsi_threshold=50, min_trend_distance=0.15)
    base.update(kw)
    return StrategyParams(**base)


def test_uptrend_pullback_produces_long_signal():
    det = EmaPullbackDetector()
    trend, entry = long_setup(end_ms=10_000_000)

    res = det.detect("BTCUSDT", trend, entry, _params())

    assert res.accepted
    sig = res.signal
    assert sig.direction is Direction.LONG
    assert sig.symbol == "BTCUSDT"
    assert sig.entry_price == entry[-1].close
    assert sig.time == entry[-1].open_time
    assert sig.confidence >= 0.5
    assert res.details["passed"] >= 2
    # every individual check passes on this setup
    assert {c.name for c in res.checks if c.passed} == {
        "price_ema",
        "rsi_cross",
        "ema_touch",
        "candle_body",
    }


def test_downtrend_rally_produces_short_signal():
    det = EmaPullbackDetector()
    trend = make_candles(trend_closes(120, start=200.0, step=-0.1), step_ms=FIFTEEN_MIN_MS)
    entry = make_candles(alternating_closes(121))

    res = det.detect("ETHUSDT", trend, entry, _params())

    assert res.accepted
    assert res.signal.direction is Direction.SHORT


def test_trend_records_ema_values_when_distance_too_small():
    det = EmaPullbackDetector()
    trend, entry = long_setup()

    res = det.detect("BTCUSDT", trend, entry, _params(min_trend_distance=5.0))

    assert not res.accepted
    assert res.reason == "trend_distance_below_min"
    t = res.details["trend"]
    assert t["ema_short"] > t["ema_long"]
    assert t["distance_pct"] < 5.0


def test_flat_market_has_no_trend():
    det = EmaPullbackDetector()
    flat = make_candles([100.0] * 120, step_ms=FIFTEEN_MIN_MS)
    _, entry = long_setup()

    res = det.detect("BTCUSDT", flat, entry, _params())

    assert res.signal is None
    assert res.reason == "trend_distance_below_min"


@pytest.mark.parametrize("n", [0, 1, 14, 59, 60, 69])
def test_short_series_is_rejected_without_error(n):
    det = EmaPullbackDetector()
    trend, entry = long_setup()

    res_trend = det.detect("BTCUSDT", trend[:n], entry, _params())
    res_entry = det.detect("BTCUSDT", trend, entry[:n], _params())

    for res in (res_trend, res_entry):
        assert res.signal is None
        assert res.reason == "insufficient_data"
        assert res.details["required"] == 70
        assert res.details["actual"] == n


def test_single_enabled_filter_failing_rejects():
    det = EmaPullbackDetector()
    trend, _ = long_setup()
    # ends on a down bar: RSI falls back under 50
    entry = make_candles(alternating_closes(121))
    params = _params(
        enable_price_ema_filter=False,
        enable_ema_touch_filter=False,
        enable_candle_filter=False,
    )

    res = det.detect("BTCUSDT", trend, entry, params)

    assert res.signal is None
    assert res.reason == "entry_quorum_failed"
    rsi_check = [c for c in res.checks if c.name == "rsi_cross"][0]
    assert rsi_check.enabled and not rsi_check.passed


def test_disabled_filter_counts_as_passed():
    det = EmaPullbackDetector()
    trend, _ = long_setup()
    # down bar: only the EMA touch passes
    entry = make_candles(alternating_closes(121))

    strict = det.detect("BTCUSDT", trend, entry, _params())
    assert strict.signal is None
    assert strict.details["passed"] == 1

    relaxed = det.detect("BTCUSDT", trend, entry, _params(enable_price_ema_filter=False))
    assert relaxed.accepted
    assert relaxed.details["passed"] == 2
    assert relaxed.signal.confidence == pytest.approx(0.5)


def test_quorum_threshold_is_configurable():
    det = EmaPullbackDetector()
    trend, _ = long_setup()
    entry = make_candles(alternating_closes(121))

    res = det.detect("BTCUSDT", trend, entry, _params(min_conditions_required=1))

    assert res.accepted
    assert res.signal.confidence == pytest.approx(0.25)


def test_rejection_explains_each_filter():
    det = EmaPullbackDetector()
    trend, _ = long_setup()
    entry = make_candles(alternating_closes(121))

    res = det.detect("BTCUSDT", trend, entry, _params())

    text = res.explain()
    assert "entry_quorum_failed" in text
    assert "rsi_cross=fail" in text
    assert "ema_touch=ok" in text


def test_ema_order_is_validated():
    with pytest.raises(ValueError):
        StrategyParams(ema_short=60, ema_long=20)


def _touch_check(res):
    return [c for c in res.checks if c.name == "ema_touch"][0]


def test_wick_on_current_bar_alone_is_not_a_pullback():
    det = EmaPullbackDetector()
    trend, _ = long_setup()
    # steady climb: every prior low stays well above EMA20
    entry = make_candles(trend_closes(120, start=100.0, step=0.1))
    entry[-1] = replace(entry[-1], low=entry[-1].close - 3.0)

    res = det.detect("BTCUSDT", trend, entry, _params())

    check = _touch_check(res)
    assert check.enabled
    assert not check.passed


def test_wick_on_prior_bar_counts_as_touch():
    det = EmaPullbackDetector()
    trend, _ = long_setup()
    entry = make_candles(trend_closes(120, start=100.0, step=0.1))
    entry[-2] = replace(entry[-2], low=entry[-2].close - 3.0)

    res = det.detect("BTCUSDT", trend, entry, _params())

    check = _touch_check(res)
    assert check.passed
    assert check.detail == "touched 1 bars ago"
