from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import date
from typing import Callable, Dict, Optional

from trendscan.core.config import TradingConfig


@dataclass
class GateDecision:
    allowed: bool
    reason: str
    open_positions: int = 0
    trades_today: int = 0


@dataclass
class DailyTradeState:
    day: date
    count: int = 0

    def reset_if_new_day(self, today: date) -> None:
        if today != self.day:
            self.day = today
            self.count = 0


class TradeGate:
    """
    Single source of truth for whether a new entry may be executed.

    - max concurrent positions
    - daily trade count (resets on local day change)
    - per-symbol cooldown after a trade

    Exhausted limits are a normal answer (allowed=False + reason), never an
    exception. Closing positions never goes through the gate.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._daily = DailyTradeState(day=self._today())
        self._last_trade_ms: Dict[str, int] = {}

    def _today(self) -> date:
        return date.fromtimestamp(self._clock())

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def trades_today(self) -> int:
        with self._lock:
            self._daily.reset_if_new_day(self._today())
            return self._daily.count

    def last_trade_ms(self, symbol: str) -> Optional[int]:
        with self._lock:
            return self._last_trade_ms.get(symbol.upper())

    def in_cooldown(self, symbol: str, at_ms: int, cooldown_seconds: int) -> bool:
        last = self.last_trade_ms(symbol)
        if last is None:
            return False
        return at_ms < last + int(cooldown_seconds) * 1000

    def record_trade(self, symbol: str, at_ms: Optional[int] = None) -> None:
        with self._lock:
            self._daily.reset_if_new_day(self._today())
            self._daily.count += 1
            self._last_trade_ms[symbol.upper()] = int(at_ms if at_ms is not None else self.now_ms())

    def capacity(self, open_positions: int, config: TradingConfig) -> GateDecision:
        """Account-wide caps only (no symbol)."""
        trades = self.trades_today()
        if open_positions >= config.max_open_positions:
            return GateDecision(False, "max_open_positions_reached", open_positions, trades)
        if trades >= config.daily_trades_limit:
            return GateDecision(False, "daily_trades_limit_reached", open_positions, trades)
        return GateDecision(True, "ok", open_positions, trades)

    def can_open(
        self,
        symbol: str,
        *,
        open_positions: int,
        config: TradingConfig,
        at_ms: Optional[int] = None,
    ) -> GateDecision:
        decision = self.capacity(open_positions, config)
        if not decision.allowed:
            return decision
        at = self.now_ms() if at_ms is None else int(at_ms)
        if self.in_cooldown(symbol, at, config.cooldown_seconds):
            return GateDecision(False, "symbol_in_cooldown", open_positions, decision.trades_today)
        return decision

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            self._daily.reset_if_new_day(self._today())
            return {
                "day": self._daily.day.isoformat(),
                "trades_today": self._daily.count,
                "last_trade_ms": dict(self._last_trade_ms),
            }
