from __future__ import annotations

import threading
from collections import deque
from typing import Deque, Dict, Iterable, List, Optional, Tuple

from trendscan.strategy.base import Candle

DEFAULT_MAX_LEN = 200

Key = Tuple[str, str]

_UNIT_MS = {"m": 60_000, "h": 3_600_000, "d": 86_400_000, "w": 604_800_000}


def timeframe_ms(timeframe: str) -> int:
    """'5m' -> 300000, '4h' -> 14400000."""
    tf = timeframe.strip()
    if len(tf) < 2 or tf[-1] not in _UNIT_MS or not tf[:-1].isdigit():
        raise ValueError(f"unsupported timeframe: {timeframe}")
    return int(tf[:-1]) * _UNIT_MS[tf[-1]]


class CandleStore:
    """
    Bounded OHLCV series per (symbol, timeframe), most recent last.

    append():
      - same open_time as the tail -> replaces the tail (bar still forming)
      - older than the tail        -> ignored
      - newer                      -> appended, oldest evicted when full
    """

    def __init__(self, max_len: int = DEFAULT_MAX_LEN):
        if max_len <= 0:
            raise ValueError("max_len must be > 0")
        self.max_len = int(max_len)
        self._series: Dict[Key, Deque[Candle]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(symbol: str, timeframe: str) -> Key:
        return (symbol.strip().upper(), timeframe.strip())

    def append(self, symbol: str, timeframe: str, candle: Candle) -> bool:
        key = self._key(symbol, timeframe)
        with self._lock:
            series = self._series.get(key)
            if series is None:
                series = deque(maxlen=self.max_len)
                self._series[key] = series
            if series:
                tail = series[-1]
                if candle.open_time == tail.open_time:
                    series[-1] = candle
                    return True
                if candle.open_time < tail.open_time:
                    return False
            series.append(candle)
            return True

    def replace(self, symbol: str, timeframe: str, candles: Iterable[Candle]) -> None:
        ordered = sorted(candles, key=lambda c: c.open_time)
        with self._lock:
            self._series[self._key(symbol, timeframe)] = deque(
                ordered[-self.max_len :], maxlen=self.max_len
            )

    def get(self, symbol: str, timeframe: str) -> List[Candle]:
        with self._lock:
            series = self._series.get(self._key(symbol, timeframe))
            return list(series) if series else []

    def latest(self, symbol: str, timeframe: str) -> Optional[Candle]:
        with self._lock:
            series = self._series.get(self._key(symbol, timeframe))
            return series[-1] if series else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._series)
