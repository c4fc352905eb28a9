from __future__ import annotations

import logging
from typing import List, Sequence

from trendscan.core.config import StrategyParams
from trendscan.strategy.base import (
    Candle,
    DetectionResult,
    Detector,
    Direction,
    FilterCheck,
    IndicatorSet,
    Signal,
    TrendResult,
)
from trendscan.strategy.indicators import ema, rsi, volume_ma

log = logging.getLogger("trendscan.strategy")

SIGNAL_CHECKS = 4


def compute_indicators(candles: Sequence[Candle], params: StrategyParams) -> IndicatorSet:
    closes = [c.close for c in candles]
    volumes = [c.volume for c in candles]
    return IndicatorSet(
        ema_short=ema(closes, params.ema_short),
        ema_long=ema(closes, params.ema_long),
        volume_ma=volume_ma(volumes, params.volume_period),
        rsi=rsi(closes, params.rsi_period),
    ).aligned()


def _insufficient(where: str, required: int, actual: int) -> DetectionResult:
    return DetectionResult(
        signal=None,
        reason="insufficient_data",
        details={"timeframe": where, "required": required, "actual": actual},
    )


class EmaPullbackDetector(Detector):
    """
    Higher-timeframe EMA trend filter + lower-timeframe pullback entry.

    Trend: EMA short above EMA long with price above EMA short is long (mirror
    for short), provided the EMAs are at least `min_trend_distance` percent
    apart.

    Entry: four independent checks on the entry timeframe (price vs EMA, RSI
    cross, EMA touch within the lookback, candle body). Disabled checks count
    as passed; a quorum of `min_conditions_required` is enough.
    """

    name = "ema_pullback"

    def trend(self, candles: Sequence[Candle], params: StrategyParams) -> TrendResult:
        required = params.min_candles
        if len(candles) < required:
            return TrendResult(
                direction=None,
                reason="insufficient_data",
                details={"required": required, "actual": len(candles)},
            )

        ind = compute_indicators(candles, params)
        if ind.empty:
            return TrendResult(direction=None, reason="insufficient_data", details={})

        ema_s = ind.ema_short[-1]
        ema_l = ind.ema_long[-1]
        last = candles[-1]
        price = last.close
        distance = abs(ema_s - ema_l) / ema_l * 100.0 if ema_l else 0.0

        details = {
            "ema_short": round(ema_s, 8),
            "ema_long": round(ema_l, 8),
            "price": price,
            "distance_pct": round(distance, 4),
            "min_distance_pct": params.min_trend_distance,
        }

        if distance < params.min_trend_distance:
            return TrendResult(direction=None, reason="trend_distance_below_min", details=details)

        if ema_s > ema_l and price > ema_s:
            direction = Direction.LONG
        elif ema_s < ema_l and price < ema_s:
            direction = Direction.SHORT
        else:
            return TrendResult(direction=None, reason="trend_unclear", details=details)

        if params.require_trend_volume:
            vol_ma = ind.volume_ma[-1]
            details["volume"] = last.volume
            details["volume_ma"] = round(vol_ma, 8)
            if last.volume < vol_ma:
                return TrendResult(direction=None, reason="trend_volume_below_ma", details=details)

        return TrendResult(direction=direction, reason="trend_ok", details=details)

    def detect(
        self,
        symbol: str,
        trend_candles: Sequence[Candle],
        entry_candles: Sequence[Candle],
        params: StrategyParams,
    ) -> DetectionResult:
        required = params.min_candles
        if len(trend_candles) < required:
            return _insufficient(params.trend_timeframe, required, len(trend_candles))
        if len(entry_candles) < required:
            return _insufficient(params.entry_timeframe, required, len(entry_candles))

        tr = self.trend(trend_candles, params)
        if tr.direction is None:
            return DetectionResult(signal=None, reason=tr.reason, details={"trend": tr.details})

        ind = compute_indicators(entry_candles, params)
        if ind.empty or len(ind.rsi) < 2:
            return _insufficient(params.entry_timeframe, required, len(entry_candles))

        checks = self._entry_checks(tr.direction, entry_candles, ind, params)
        passed_total = sum(1 for c in checks if c.passed or not c.enabled)
        active = [c for c in checks if c.enabled]
        active_passed = sum(1 for c in active if c.passed)
        need = params.min_conditions_required

        details = {
            "trend": tr.details,
            "direction": tr.direction.value,
            "passed": passed_total,
            "active": len(active),
            "active_passed": active_passed,
            "required": need,
        }

        # disabled checks count as passed, but at least one enabled check must
        # really pass unless every check is disabled
        if passed_total < need or (active and active_passed == 0):
            return DetectionResult(
                signal=None, reason="entry_quorum_failed", details=details, checks=checks
            )

        last = entry_candles[-1]
        passed_names = [c.name for c in checks if c.enabled and c.passed]
        sig = Signal(
            symbol=symbol,
            direction=tr.direction,
            time=last.open_time,
            entry_price=last.close,
            confidence=passed_total / SIGNAL_CHECKS,
            reason=(
                f"{params.trend_timeframe} {tr.direction.value} trend, "
                f"{passed_total}/{SIGNAL_CHECKS} entry checks passed"
                + (f" ({', '.join(passed_names)})" if passed_names else "")
            ),
        )
        log.debug("signal %s %s conf=%.2f", symbol, sig.direction.value, sig.confidence)
        return DetectionResult(signal=sig, reason="signal", details=details, checks=checks)

    def _entry_checks(
        self,
        direction: Direction,
        candles: Sequence[Candle],
        ind: IndicatorSet,
        params: StrategyParams,
    ) -> List[FilterCheck]:
        long = direction is Direction.LONG
        last = candles[-1]
        ema_now = ind.ema_short[-1]

        # (a) price beyond EMA short on the trend side
        price_ok = last.close > ema_now if long else last.close < ema_now
        price_check = FilterCheck(
            name="price_ema",
            enabled=params.enable_price_ema_filter,
            passed=price_ok,
            detail=f"close={last.close} ema{params.ema_short}={ema_now:.8g}",
        )

        # (b) RSI crosses the threshold versus the prior bar
        prev_rsi, cur_rsi = ind.rsi[-2], ind.rsi[-1]
        thr = params.rsi_threshold
        if long:
            rsi_ok = prev_rsi < thr <= cur_rsi
        else:
            rsi_ok = prev_rsi > thr >= cur_rsi
        rsi_check = FilterCheck(
            name="rsi_cross",
            enabled=params.enable_rsi_filter,
            passed=rsi_ok,
            detail=f"rsi {prev_rsi:.2f}->{cur_rsi:.2f} threshold={thr}",
        )

        # (c) a wick reached EMA short on one of the bars before the current one
        lookback = min(params.ema_touch_lookback, len(ind.ema_short) - 1, len(candles) - 1)
        touched_at = None
        for k in range(1, lookback + 1):
            c = candles[-k - 1]
            e = ind.ema_short[-k - 1]
            if (long and c.low <= e) or (not long and c.high >= e):
                touched_at = k
                break
        touch_check = FilterCheck(
            name="ema_touch",
            enabled=params.enable_ema_touch_filter,
            passed=touched_at is not None,
            detail=(
                f"touched {touched_at} bars ago"
                if touched_at is not None
                else f"no touch in last {lookback} bars"
            ),
        )

        # (d) candle colour agrees with trend and body is large enough
        colour_ok = last.is_green if long else last.is_red
        body = last.body_percent
        candle_check = FilterCheck(
            name="candle_body",
            enabled=params.enable_candle_filter,
            passed=colour_ok and body >= params.min_candle_change_percent,
            detail=f"body={body:.4f}% min={params.min_candle_change_percent}%",
        )

        return [price_check, rsi_check, touch_check, candle_check]
