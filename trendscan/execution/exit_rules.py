from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from trendscan.core.config import TradingConfig
from trendscan.runner.models import Position
from trendscan.strategy.base import Direction

QTY_EPS = 1e-12


class ExitAction(str, Enum):
    HOLD = "HOLD"
    TAKE_PROFIT = "TAKE_PROFIT"
    PARTIAL_R1 = "PARTIAL_R1"
    TAKE_PROFIT_R2 = "TAKE_PROFIT_R2"
    TAKE_PROFIT_R3 = "TAKE_PROFIT_R3"
    TRAILING_STOP = "TRAILING_STOP"
    STOP_LOSS = "STOP_LOSS"
    REVERSE_SIGNAL = "REVERSE_SIGNAL"
    MANUAL = "MANUAL"


@dataclass(frozen=True)
class ExitDecision:
    action: ExitAction
    close_qty: float
    full: bool
    reason: str
    # position with refreshed tracking (mark, extremes, trailing stop); quantity
    # and take-profit flags are untouched until a fill is confirmed
    position: Position

    @property
    def closes(self) -> bool:
        return self.action is not ExitAction.HOLD and self.close_qty > 0


def _move_pct(entry: float, price: float, direction: Direction) -> float:
    """
    Profit move in percent:
      LONG:  + when price > entry
      SHORT: + when price < entry
    """
    if not entry or entry <= 0:
        return 0.0
    if direction is Direction.LONG:
        return (price - entry) / entry * 100.0
    return (entry - price) / entry * 100.0


def risk_per_unit(entry_price: float, stop_loss_percent: float) -> float:
    """R = entry * stop_loss% / 100, fixed for the lifetime of the position."""
    return float(entry_price) * float(stop_loss_percent) / 100.0


def _reached(pos: Position, price: float, multiple: float) -> bool:
    """Price at or beyond the `multiple` R target (compared as prices, not ratios)."""
    target = pos.r_price(multiple)
    return price >= target if pos.is_long else price <= target


def track(position: Position, price: float, config: TradingConfig) -> Position:
    """
    Refresh mark price, running extremes and the trailing stop.

    The trailing stop activates once the running extreme has moved
    `trailing_stop_trigger_r` R in favour, trails the extreme by that same
    distance, is clamped to entry when breakeven is enabled, and never loosens.
    """
    highest = max(position.highest_price, price)
    lowest = min(position.lowest_price, price)
    pos = replace(position, mark_price=price, highest_price=highest, lowest_price=lowest)

    if not config.use_trailing_stop or pos.risk_per_unit <= 0:
        return pos

    trigger = config.trailing_stop_trigger_r
    extreme = highest if pos.is_long else lowest
    if not _reached(pos, extreme, trigger):
        return pos

    offset = trigger * pos.risk_per_unit
    breakeven = pos.breakeven_applied
    if pos.is_long:
        candidate = extreme - offset
        if config.trailing_stop_move_to_breakeven and candidate <= pos.entry_price:
            candidate = pos.entry_price
            breakeven = True
        if pos.trailing_stop_price is not None:
            candidate = max(candidate, pos.trailing_stop_price)
    else:
        candidate = extreme + offset
        if config.trailing_stop_move_to_breakeven and candidate >= pos.entry_price:
            candidate = pos.entry_price
            breakeven = True
        if pos.trailing_stop_price is not None:
            candidate = min(candidate, pos.trailing_stop_price)

    return replace(pos, trailing_stop_price=candidate, breakeven_applied=breakeven)


def _crossed(pos: Position, price: float, stop: float) -> bool:
    return price <= stop if pos.is_long else price >= stop


def evaluate_exit(
    position: Position,
    price: float,
    config: TradingConfig,
    trend_direction: Optional[Direction] = None,
) -> ExitDecision:
    """
    Decide the single exit action for this tick. First match wins:

      1. simple take-profit (partial ladder disabled, auto_take_profit on)
      2. partial ladder 1R / 2R / 3R
      3. trailing stop
      4. static stop at entry -/+ R (auto_stop_loss)
      5. reverse signal (higher-timeframe trend now opposite)
    """
    pos = track(position, price, config)
    qty = pos.quantity
    r_now = pos.r_multiple(price)
    tp = pos.take_profit

    def full(action: ExitAction, reason: str) -> ExitDecision:
        return ExitDecision(action=action, close_qty=qty, full=True, reason=reason, position=pos)

    # 1) simple take profit
    if not config.use_partial_take_profit and config.auto_take_profit:
        move = _move_pct(pos.entry_price, price, pos.direction)
        if move >= config.take_profit_percent:
            return full(ExitAction.TAKE_PROFIT, f"take profit at {move:.3f}%")

    # 2) partial ladder
    if config.use_partial_take_profit and pos.risk_per_unit > 0:
        if not tp.r1_done and _reached(pos, price, 1.0):
            part = qty * config.tp_r1_close_percent / 100.0
            return ExitDecision(
                action=ExitAction.PARTIAL_R1,
                close_qty=part,
                full=part >= qty - QTY_EPS,
                reason=f"1R reached ({r_now:.2f}R), closing {config.tp_r1_close_percent:g}%",
                position=pos,
            )
        if tp.r1_done and not tp.r2_done and _reached(pos, price, 2.0):
            part = qty * config.tp_r2_close_percent / 100.0
            return ExitDecision(
                action=ExitAction.TAKE_PROFIT_R2,
                close_qty=part,
                full=part >= qty - QTY_EPS,
                reason=f"2R reached ({r_now:.2f}R), closing {config.tp_r2_close_percent:g}%",
                position=pos,
            )
        if tp.r2_done and not tp.r3_done and _reached(pos, price, 3.0):
            part = qty * config.tp_r3_close_percent / 100.0
            return ExitDecision(
                action=ExitAction.TAKE_PROFIT_R3,
                close_qty=part,
                full=part >= qty - QTY_EPS,
                reason=f"3R reached ({r_now:.2f}R), closing {config.tp_r3_close_percent:g}%",
                position=pos,
            )

    # 3) trailing stop
    if config.use_trailing_stop and pos.trailing_stop_price is not None:
        if _crossed(pos, price, pos.trailing_stop_price):
            return full(
                ExitAction.TRAILING_STOP,
                f"trailing stop hit at {price} (stop {pos.trailing_stop_price})",
            )

    # 4) static stop
    if config.auto_stop_loss and pos.risk_per_unit > 0 and _crossed(pos, price, pos.stop_price):
        return full(ExitAction.STOP_LOSS, f"stop loss hit at {price} (stop {pos.stop_price})")

    # 5) reverse signal
    if config.reverse_signal_close and trend_direction is not None:
        if trend_direction is pos.direction.opposite:
            return full(ExitAction.REVERSE_SIGNAL, f"trend reversed to {trend_direction.value}")

    return ExitDecision(action=ExitAction.HOLD, close_qty=0.0, full=False, reason="hold", position=pos)


def apply_close(position: Position, decision: ExitDecision, filled_qty: float) -> Optional[Position]:
    """
    State transition after a confirmed fill of `filled_qty`.
    Returns None when nothing is left (position is removed).
    """
    filled = min(max(float(filled_qty), 0.0), position.quantity)
    remaining = position.quantity - filled
    if remaining <= QTY_EPS:
        return None

    base = decision.position
    tp = base.take_profit
    if decision.action is ExitAction.PARTIAL_R1:
        tp = replace(tp, r1_done=True)
    elif decision.action is ExitAction.TAKE_PROFIT_R2:
        tp = replace(tp, r2_done=True)
    elif decision.action is ExitAction.TAKE_PROFIT_R3:
        tp = replace(tp, r3_done=True)

    return replace(base, quantity=remaining, take_profit=tp)
