from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol

from trendscan.exchange.binance.filters import SymbolFilters
from trendscan.strategy.base import Candle

log = logging.getLogger("trendscan.gateway")

FILLED_STATUSES = {"FILLED", "PARTIALLY_FILLED"}


@dataclass(frozen=True)
class OrderResult:
    order_id: Optional[str]
    status: str
    executed_qty: float = 0.0
    avg_price: float = 0.0
    error: Optional[str] = None

    @property
    def filled(self) -> bool:
        """Only an explicit fill counts; anything else is 'not executed'."""
        if self.error:
            return False
        return self.status.upper() in FILLED_STATUSES or self.executed_qty > 0

    @classmethod
    def rejected(cls, error: str) -> "OrderResult":
        return cls(order_id=None, status="REJECTED", error=error)


class MarketDataGateway(Protocol):
    def get_candles(self, symbol: str, timeframe: str, limit: int) -> List[Candle]: ...

    def get_liquidity_ranking(self) -> List[str]: ...

    def get_mark_price(self, symbol: str) -> float: ...

    def get_symbol_filters(self, symbol: str) -> SymbolFilters: ...


class OrderGateway(Protocol):
    def place_market_order(
        self, symbol: str, side: str, quantity: float, position_side: str
    ) -> OrderResult: ...

    def close_position(self, symbol: str, quantity: float, position_side: str) -> OrderResult: ...

    def set_leverage(self, symbol: str, leverage: int) -> None: ...

    def get_available_balance(self) -> float: ...


class PaperOrderGateway:
    """
    Simulated order gateway: fills market orders immediately at the current
    mark price and tracks a margin balance. Useful for dry runs and tests.
    """

    def __init__(
        self,
        price_source: Callable[[str], float],
        balance_usdt: float = 1000.0,
    ):
        self._price = price_source
        self._balance = float(balance_usdt)
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._leverage: Dict[str, int] = {}
        # symbol -> (signed qty, avg entry)
        self._positions: Dict[str, tuple] = {}

    def get_available_balance(self) -> float:
        with self._lock:
            return self._balance

    def set_leverage(self, symbol: str, leverage: int) -> None:
        if int(leverage) < 1:
            raise ValueError(f"invalid leverage {leverage}")
        with self._lock:
            self._leverage[symbol.upper()] = int(leverage)

    def leverage(self, symbol: str) -> int:
        with self._lock:
            return self._leverage.get(symbol.upper(), 1)

    def place_market_order(
        self, symbol: str, side: str, quantity: float, position_side: str = "BOTH"
    ) -> OrderResult:
        sym = symbol.upper()
        if quantity <= 0:
            return OrderResult.rejected("quantity must be > 0")
        try:
            price = float(self._price(sym))
        except Exception as e:
            return OrderResult.rejected(f"{type(e).__name__}: {e}")
        if price <= 0:
            return OrderResult.rejected("no price")

        signed = quantity if side.upper() == "BUY" else -quantity
        with self._lock:
            lev = self._leverage.get(sym, 1)
            margin = quantity * price / lev
            if margin > self._balance:
                return OrderResult.rejected("insufficient paper balance")
            self._balance -= margin
            old_qty, _ = self._positions.get(sym, (0.0, 0.0))
            self._positions[sym] = (old_qty + signed, price)
            oid = f"paper-{next(self._ids)}"

        log.info("paper fill %s %s %s @ %s", sym, side, quantity, price)
        return OrderResult(order_id=oid, status="FILLED", executed_qty=quantity, avg_price=price)

    def close_position(self, symbol: str, quantity: float, position_side: str = "BOTH") -> OrderResult:
        sym = symbol.upper()
        with self._lock:
            held, entry = self._positions.get(sym, (0.0, 0.0))
        if abs(held) < 1e-12:
            return OrderResult.rejected("no paper position")

        qty = min(float(quantity), abs(held))
        try:
            price = float(self._price(sym))
        except Exception as e:
            return OrderResult.rejected(f"{type(e).__name__}: {e}")

        with self._lock:
            lev = self._leverage.get(sym, 1)
            pnl = (price - entry) * qty if held > 0 else (entry - price) * qty
            self._balance += qty * entry / lev + pnl
            left = held - qty if held > 0 else held + qty
            if abs(left) < 1e-12:
                self._positions.pop(sym, None)
            else:
                self._positions[sym] = (left, entry)
            oid = f"paper-{next(self._ids)}"

        log.info("paper close %s qty=%s @ %s", sym, qty, price)
        return OrderResult(order_id=oid, status="FILLED", executed_qty=qty, avg_price=price)
