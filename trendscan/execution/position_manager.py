from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from trendscan.core.config import TradingConfig
from trendscan.exchange.binance.filters import round_qty
from trendscan.exchange.gateways import MarketDataGateway, OrderGateway, OrderResult
from trendscan.execution.exit_rules import (
    ExitAction,
    ExitDecision,
    apply_close,
    evaluate_exit,
    risk_per_unit,
    track,
)
from trendscan.market.candle_store import CandleStore, timeframe_ms
from trendscan.persistence.audit import Audit
from trendscan.risk.gate import TradeGate
from trendscan.runner.models import Position
from trendscan.strategy.base import Detector, Direction, Signal
from trendscan.symbols.sizing import margin_for, size_from_budget

log = logging.getLogger("trendscan.positions")


@dataclass
class ExecutionResult:
    executed: bool
    reason: str
    position: Optional[Position] = None
    details: Dict[str, object] = field(default_factory=dict)


def _err(e: BaseException) -> str:
    return f"{type(e).__name__}: {e}"


class PositionManager:
    """
    Owns the open-position map. Nothing else creates, mutates or removes
    positions; the scanner only reads counts and symbols.

    Order intents are emitted only while `auto_trading` is set (manual close
    excepted). A position changes only after the gateway confirms a fill.
    """

    def __init__(
        self,
        *,
        market: MarketDataGateway,
        orders: OrderGateway,
        gate: TradeGate,
        audit: Audit,
        candle_store: CandleStore,
        detector: Detector,
        auto_trading: threading.Event,
        clock: Callable[[], float] = time.time,
    ):
        self.market = market
        self.orders = orders
        self.gate = gate
        self.audit = audit
        self.candles = candle_store
        self.detector = detector
        self.auto_trading = auto_trading
        self._clock = clock

        self._positions: Dict[str, Position] = {}
        self._busy: set = set()
        self._lock = threading.RLock()

    # ---------------- read side ----------------

    def positions(self) -> List[Position]:
        with self._lock:
            return list(self._positions.values())

    def get(self, symbol: str) -> Optional[Position]:
        with self._lock:
            return self._positions.get(symbol.upper())

    def has_position(self, symbol: str) -> bool:
        with self._lock:
            return symbol.upper() in self._positions

    def open_count(self) -> int:
        with self._lock:
            return len(self._positions)

    def open_symbols(self) -> List[str]:
        with self._lock:
            return list(self._positions)

    # ---------------- per-symbol guard ----------------

    def _claim(self, symbol: str) -> bool:
        with self._lock:
            if symbol in self._busy:
                return False
            self._busy.add(symbol)
            return True

    def _release(self, symbol: str) -> None:
        with self._lock:
            self._busy.discard(symbol)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ---------------- entries ----------------

    def open_from_signal(self, signal: Signal, config: TradingConfig) -> ExecutionResult:
        sym = signal.symbol.upper()
        if not self._claim(sym):
            return self._skip(sym, "symbol_busy")
        try:
            return self._open(sym, signal, config)
        finally:
            self._release(sym)

    def _skip(self, sym: str, reason: str, **details) -> ExecutionResult:
        self.audit.event("ENTRY_SKIPPED", symbol=sym, action="OPEN", details={"reason": reason, **details})
        return ExecutionResult(executed=False, reason=reason, details=details)

    def _open(self, sym: str, signal: Signal, config: TradingConfig) -> ExecutionResult:
        if not self.auto_trading.is_set():
            return self._skip(sym, "auto_trading_disabled")

        if self.has_position(sym):
            return self._skip(sym, "position_exists")

        decision = self.gate.can_open(
            sym, open_positions=self.open_count(), config=config, at_ms=signal.time
        )
        if not decision.allowed:
            return self._skip(sym, decision.reason, trades_today=decision.trades_today)

        leverage = config.leverage_for(sym)
        try:
            filters = self.market.get_symbol_filters(sym)
            balance = self.orders.get_available_balance()
        except Exception as e:
            self.audit.event("ENTRY_FAILED", symbol=sym, action="OPEN", details={"stage": "sizing", "error": _err(e)})
            return ExecutionResult(executed=False, reason="sizing_failed", details={"error": _err(e)})

        size = size_from_budget(
            symbol=sym,
            price=signal.entry_price,
            usdt_margin=margin_for(balance, config.position_size_percent),
            leverage=leverage,
            filters=filters,
            min_notional_override=config.min_notional_usdt,
        )
        if not size.ok:
            return self._skip(sym, size.reason, **size.details)

        try:
            self.orders.set_leverage(sym, leverage)
        except Exception as e:
            self.audit.event("ENTRY_FAILED", symbol=sym, action="SET_LEVERAGE", details={"leverage": leverage, "error": _err(e)})
            return ExecutionResult(executed=False, reason="set_leverage_failed", details={"error": _err(e)})

        # auto trading may have been switched off while we were sizing
        if not self.auto_trading.is_set():
            return self._skip(sym, "auto_trading_disabled")

        position_side = signal.direction.value.upper() if config.hedge_mode else "BOTH"
        result = self._send(
            lambda: self.orders.place_market_order(
                sym, signal.direction.order_side, size.qty, position_side
            )
        )
        if not result.filled:
            self.audit.event(
                "ENTRY_FAILED",
                symbol=sym,
                action="OPEN",
                details={"qty": size.qty, "status": result.status, "error": result.error},
            )
            return ExecutionResult(executed=False, reason="order_not_filled", details={"status": result.status, "error": result.error})

        entry = result.avg_price if result.avg_price > 0 else signal.entry_price
        qty = result.executed_qty if result.executed_qty > 0 else size.qty
        pos = Position(
            symbol=sym,
            direction=signal.direction,
            entry_price=entry,
            quantity=qty,
            original_quantity=qty,
            risk_per_unit=risk_per_unit(entry, config.stop_loss_percent),
            mark_price=entry,
            highest_price=entry,
            lowest_price=entry,
            leverage=leverage,
            order_id=result.order_id,
            opened_at_ms=self._now_ms(),
            position_side=position_side,
        )
        with self._lock:
            self._positions[sym] = pos
        self.gate.record_trade(sym, pos.opened_at_ms)

        self.audit.event(
            "POSITION_OPENED",
            symbol=sym,
            action=signal.direction.order_side,
            details={
                "order_id": result.order_id,
                "entry_price": entry,
                "qty": qty,
                "leverage": leverage,
                "R": pos.risk_per_unit,
                "stop_price": pos.stop_price,
                "signal_time": signal.time,
                "confidence": signal.confidence,
            },
        )
        return ExecutionResult(executed=True, reason="filled", position=pos)

    def _send(self, call: Callable[[], OrderResult]) -> OrderResult:
        try:
            return call()
        except Exception as e:
            # gateway errors count as "not executed"
            return OrderResult.rejected(_err(e))

    # ---------------- refresh tick ----------------

    def refresh(self, config: TradingConfig) -> List[Dict[str, object]]:
        """
        One risk pass over all open positions. Returns a summary per position.
        Gateway failures leave the position as it was; the next tick retries.
        """
        out: List[Dict[str, object]] = []
        for pos in self.positions():
            sym = pos.symbol
            if not self._claim(sym):
                continue
            try:
                out.append(self._refresh_one(sym, config))
            except Exception as e:
                self.audit.event("POSITION_REFRESH_FAILED", symbol=sym, details={"error": _err(e)})
                out.append({"symbol": sym, "action": "ERROR", "error": _err(e)})
            finally:
                self._release(sym)
        return out

    def _refresh_one(self, sym: str, config: TradingConfig) -> Dict[str, object]:
        pos = self.get(sym)
        if pos is None:
            return {"symbol": sym, "action": "GONE"}

        price = self.market.get_mark_price(sym)
        trend = self._trend_for(sym, config) if config.reverse_signal_close else None
        decision = evaluate_exit(pos, price, config, trend)

        if not decision.closes:
            self._store(sym, decision.position)
            return {"symbol": sym, "action": decision.action.value, "price": price}

        if not self.auto_trading.is_set():
            # observe only; no order intents while auto trading is off
            self._store(sym, decision.position)
            return {"symbol": sym, "action": "HOLD", "pending": decision.action.value, "price": price}

        return self._execute_close(sym, pos, decision)

    def _trend_for(self, sym: str, config: TradingConfig) -> Optional[Direction]:
        tf = config.strategy.trend_timeframe
        cached = self.candles.get(sym, tf)
        stale = not cached or (self._now_ms() - cached[-1].open_time) >= timeframe_ms(tf)
        if stale:
            try:
                fresh = self.market.get_candles(sym, tf, config.candle_limit)
                self.candles.replace(sym, tf, fresh)
                cached = self.candles.get(sym, tf)
            except Exception as e:
                log.warning("trend candles refresh failed for %s: %s", sym, _err(e))
        if not cached:
            return None
        return self.detector.trend(cached, config.strategy).direction

    def _close_qty(self, pos: Position, decision: ExitDecision) -> float:
        if decision.full:
            return pos.quantity
        try:
            step = self.market.get_symbol_filters(pos.symbol).step_size
        except Exception as e:
            log.warning("filters unavailable for %s, closing unrounded: %s", pos.symbol, _err(e))
            return min(decision.close_qty, pos.quantity)
        qty = float(round_qty(decision.close_qty, step))
        # a partial that rounds to nothing closes the remainder
        if qty <= 0:
            return pos.quantity
        return min(qty, pos.quantity)

    def _execute_close(self, sym: str, pos: Position, decision: ExitDecision) -> Dict[str, object]:
        qty = self._close_qty(pos, decision)
        result = self._send(lambda: self.orders.close_position(sym, qty, pos.position_side))

        if not result.filled:
            # keep quantity and take-profit flags; only tracking is refreshed
            self._store(sym, decision.position)
            self.audit.event(
                "CLOSE_FAILED",
                symbol=sym,
                action=decision.action.value,
                details={"qty": qty, "status": result.status, "error": result.error},
            )
            return {"symbol": sym, "action": decision.action.value, "executed": False, "error": result.error}

        filled = result.executed_qty if result.executed_qty > 0 else qty
        updated = apply_close(pos, decision, filled)
        with self._lock:
            if updated is None:
                self._positions.pop(sym, None)
            else:
                self._positions[sym] = updated

        self.audit.event(
            "POSITION_CLOSED" if updated is None else "POSITION_PARTIAL_CLOSE",
            symbol=sym,
            action=decision.action.value,
            details={
                "reason": decision.reason,
                "qty": filled,
                "price": result.avg_price or decision.position.mark_price,
                "remaining": 0.0 if updated is None else updated.quantity,
                "r_multiple": round(pos.r_multiple(decision.position.mark_price), 4),
            },
        )
        return {
            "symbol": sym,
            "action": decision.action.value,
            "executed": True,
            "qty": filled,
            "remaining": 0.0 if updated is None else updated.quantity,
        }

    def _store(self, sym: str, pos: Position) -> None:
        with self._lock:
            if sym in self._positions:
                self._positions[sym] = pos

    # ---------------- manual ----------------

    def close_position(self, symbol: str, config: TradingConfig) -> ExecutionResult:
        """Manual full close. Works regardless of the auto trading switch."""
        sym = symbol.upper()
        if not self._claim(sym):
            return ExecutionResult(executed=False, reason="symbol_busy")
        try:
            pos = self.get(sym)
            if pos is None:
                return ExecutionResult(executed=False, reason="no_position")
            try:
                price = self.market.get_mark_price(sym)
            except Exception as e:
                log.warning("mark price unavailable for manual close %s: %s", sym, _err(e))
                price = pos.mark_price
            decision = ExitDecision(
                action=ExitAction.MANUAL,
                close_qty=pos.quantity,
                full=True,
                reason="manual close",
                position=track(pos, price, config),
            )
            summary = self._execute_close(sym, pos, decision)
            if not summary.get("executed"):
                return ExecutionResult(executed=False, reason="close_not_filled", details=summary)
            return ExecutionResult(executed=True, reason="closed", position=self.get(sym), details=summary)
        finally:
            self._release(sym)
