from __future__ import annotations

from typing import List, Sequence


def ema(values: Sequence[float], period: int) -> List[float]:
    """
    Exponential moving average series.

    Seeded with the simple average of the first `period` values, then
    e = prev + (x - prev) * 2 / (period + 1).

    Output has len(values) - period + 1 entries, the last one belonging to the
    most recent input. Returns [] when there is not enough data.
    """
    if period <= 0 or len(values) < period:
        return []
    k = 2.0 / (period + 1)
    e = sum(values[:period]) / float(period)
    out = [e]
    for v in values[period:]:
        e = e + (v - e) * k
        out.append(e)
    return out


def volume_ma(values: Sequence[float], period: int) -> List[float]:
    """
    Trailing average of volume, one value per input.
    The first period-1 points average over a shrinking window (min(period, i+1)).
    """
    if period <= 0 or len(values) < period:
        return []
    out: List[float] = []
    running = 0.0
    for i, v in enumerate(values):
        running += v
        if i >= period:
            running -= values[i - period]
        n = min(period, i + 1)
        out.append(running / n)
    return out


def rsi(closes: Sequence[float], period: int = 14) -> List[float]:
    """
    Wilder RSI, one value per input.

    Index < period is undefined and reported as 50.0. The first `period`
    changes seed the average gain/loss; later values use Wilder smoothing.
    A zero average loss maps to exactly 100.0.
    """
    if period <= 0 or len(closes) < period + 1:
        return []

    gains = 0.0
    losses = 0.0
    for i in range(1, period + 1):
        diff = closes[i] - closes[i - 1]
        if diff >= 0:
            gains += diff
        else:
            losses -= diff
    avg_gain = gains / period
    avg_loss = losses / period

    out = [50.0] * period
    out.append(_rsi_value(avg_gain, avg_loss))

    for i in range(period + 1, len(closes)):
        diff = closes[i] - closes[i - 1]
        gain = diff if diff > 0 else 0.0
        loss = -diff if diff < 0 else 0.0
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period
        out.append(_rsi_value(avg_gain, avg_loss))
    return out


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    value = 100.0 - (100.0 / (1.0 + rs))
    return min(100.0, max(0.0, value))
