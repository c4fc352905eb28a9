# trendscan/runner/models.py
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from trendscan.strategy.base import Direction, Signal


@dataclass(frozen=True)
class TakeProfitState:
    r1_done: bool = False
    r2_done: bool = False
    r3_done: bool = False


@dataclass(frozen=True)
class Position:
    """
    One open position. Only the PositionManager creates or replaces these;
    every transition produces a new value (dataclasses.replace).
    """

    symbol: str
    direction: Direction
    entry_price: float
    quantity: float
    original_quantity: float
    risk_per_unit: float  # R, fixed at entry
    mark_price: float
    highest_price: float
    lowest_price: float
    leverage: int = 1
    order_id: Optional[str] = None
    opened_at_ms: int = 0
    position_side: str = "BOTH"  # BOTH | LONG | SHORT (hedge mode)
    take_profit: TakeProfitState = field(default_factory=TakeProfitState)
    trailing_stop_price: Optional[float] = None
    breakeven_applied: bool = False

    @property
    def is_long(self) -> bool:
        return self.direction is Direction.LONG

    @property
    def stop_price(self) -> float:
        """Original static stop, entry -/+ R."""
        if self.is_long:
            return self.entry_price - self.risk_per_unit
        return self.entry_price + self.risk_per_unit

    def r_price(self, multiple: float) -> float:
        if self.is_long:
            return self.entry_price + multiple * self.risk_per_unit
        return self.entry_price - multiple * self.risk_per_unit

    def r_multiple(self, price: float) -> float:
        if self.risk_per_unit <= 0:
            return 0.0
        move = price - self.entry_price if self.is_long else self.entry_price - price
        return move / self.risk_per_unit

    @property
    def unrealized_pnl(self) -> float:
        move = self.mark_price - self.entry_price
        if not self.is_long:
            move = -move
        return move * self.quantity

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["direction"] = self.direction.value
        d["stop_price"] = self.stop_price
        d["unrealized_pnl"] = self.unrealized_pnl
        d["r_multiple"] = round(self.r_multiple(self.mark_price), 4)
        return d


@dataclass(frozen=True)
class SignalRecord:
    signal: Signal
    executed: bool
    not_executed_reason: Optional[str] = None
    recorded_at_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self.signal)
        d["direction"] = self.signal.direction.value
        d["executed"] = self.executed
        d["not_executed_reason"] = self.not_executed_reason
        d["recorded_at_ms"] = self.recorded_at_ms
        return d


@dataclass
class ScanReport:
    cycle_id: str
    batch_index: int = 0
    total_batches: int = 0
    symbols: List[str] = field(default_factory=list)
    checked: int = 0
    skipped: Dict[str, str] = field(default_factory=dict)  # symbol -> reason
    signals: List[str] = field(default_factory=list)
    executed: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    cancelled: bool = False
    status: str = "completed"  # completed | skipped_busy | disabled | no_pool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
