from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from trendscan.core.config import StrategyParams


class Direction(str, Enum):
    LONG = "long"
    SHORT = "short"

    @property
    def opposite(self) -> "Direction":
        return Direction.SHORT if self is Direction.LONG else Direction.LONG

    @property
    def order_side(self) -> str:
        return "BUY" if self is Direction.LONG else "SELL"


@dataclass(frozen=True)
class Candle:
    open_time: int  # ms
    open: float
    high: float
    low: float
    close: float
    volume: float

    @property
    def is_green(self) -> bool:
        return self.close > self.open

    @property
    def is_red(self) -> bool:
        return self.close < self.open

    @property
    def body_percent(self) -> float:
        if self.open == 0:
            return 0.0
        return abs(self.close - self.open) / self.open * 100.0


@dataclass(frozen=True)
class Signal:
    symbol: str
    direction: Direction
    time: int  # open time of the entry candle, ms
    entry_price: float
    confidence: float
    reason: str


@dataclass(frozen=True)
class FilterCheck:
    name: str
    enabled: bool
    passed: bool
    detail: str = ""


@dataclass(frozen=True)
class TrendResult:
    direction: Optional[Direction]
    reason: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DetectionResult:
    signal: Optional[Signal]
    reason: str
    details: Dict[str, Any] = field(default_factory=dict)
    checks: List[FilterCheck] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.signal is not None

    def explain(self) -> str:
        if not self.checks:
            return self.reason
        parts = []
        for c in self.checks:
            state = "off" if not c.enabled else ("ok" if c.passed else "fail")
            parts.append(f"{c.name}={state}")
        return f"{self.reason} ({', '.join(parts)})"


@dataclass(frozen=True)
class IndicatorSet:
    """
    Indicator arrays for one series. Each array ends at the most recent candle.
    """

    ema_short: List[float]
    ema_long: List[float]
    volume_ma: List[float]
    rsi: List[float]

    @property
    def empty(self) -> bool:
        return not (self.ema_short and self.ema_long and self.volume_ma and self.rsi)

    def aligned(self) -> "IndicatorSet":
        """Cut every array to the shortest length so index i means the same candle."""
        n = min(len(self.ema_short), len(self.ema_long), len(self.volume_ma), len(self.rsi))
        if n == 0:
            return IndicatorSet([], [], [], [])
        return IndicatorSet(
            ema_short=self.ema_short[-n:],
            ema_long=self.ema_long[-n:],
            volume_ma=self.volume_ma[-n:],
            rsi=self.rsi[-n:],
        )


class Detector:
    name: str = "base"

    def detect(
        self,
        symbol: str,
        trend_candles: Sequence[Candle],
        entry_candles: Sequence[Candle],
        params: StrategyParams,
    ) -> DetectionResult:
        raise NotImplementedError

    def trend(self, candles: Sequence[Candle], params: StrategyParams) -> TrendResult:
        raise NotImplementedError
