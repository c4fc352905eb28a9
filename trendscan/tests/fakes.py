"""Fake gateways and candle builders shared by the tests."""
from __future__ import annotations

from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from trendscan.exchange.binance.filters import SymbolFilters
from trendscan.exchange.gateways import OrderResult
from trendscan.strategy.base import Candle

FIVE_MIN_MS = 300_000
FIFTEEN_MIN_MS = 900_000


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    @property
    def ms(self) -> int:
        return int(self.now * 1000)


def make_candles(
    closes: List[float],
    *,
    start_ms: int = 0,
    step_ms: int = FIVE_MIN_MS,
    wick: float = 0.05,
    volume: float = 1000.0,
) -> List[Candle]:
    """Each candle opens at the previous close; wicks extend `wick` past the body."""
    out: List[Candle] = []
    prev = closes[0] if closes else 0.0
    for i, c in enumerate(closes):
        o = prev
        out.append(
            Candle(
                open_time=start_ms + i * step_ms,
                open=o,
                high=max(o, c) + wick,
                low=min(o, c) - wick,
                close=c,
                volume=volume,
            )
        )
        prev = c
    return out


def trend_closes(n: int = 120, start: float = 100.0, step: float = 0.1) -> List[float]:
    return [start + step * i for i in range(n)]


def alternating_closes(n: int, base: float = 100.0, amp: float = 0.2) -> List[float]:
    """base, base+amp, base, ... An even `n` ends on an up move, odd on a down move."""
    return [base + (amp if i % 2 else 0.0) for i in range(n)]


def long_setup(end_ms: int = 0) -> Tuple[List[Candle], List[Candle]]:
    """15m uptrend + 5m pullback that ends on a green bar crossing RSI 50."""
    entry_n = 120
    trend = make_candles(
        trend_closes(120), start_ms=end_ms - 119 * FIFTEEN_MIN_MS, step_ms=FIFTEEN_MIN_MS
    )
    entry = make_candles(
        alternating_closes(entry_n), start_ms=end_ms - (entry_n - 1) * FIVE_MIN_MS
    )
    return trend, entry


def default_filters(symbol: str = "BTCUSDT") -> SymbolFilters:
    return SymbolFilters(
        symbol=symbol,
        step_size=Decimal("0.001"),
        min_qty=Decimal("0.001"),
        tick_size=Decimal("0.01"),
        min_notional=Decimal("5"),
    )


class FakeMarket:
    """In-memory MarketDataGateway with per-call counters and failure switches."""

    def __init__(self):
        self.candles: Dict[Tuple[str, str], List[Candle]] = {}
        self.ranking: List[str] = []
        self.prices: Dict[str, float] = {}
        self.fail_candles: set = set()
        self.fail_price: set = set()
        self.fail_ranking = False
        self.candle_calls = 0
        self.ranking_calls = 0

    def get_candles(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        self.candle_calls += 1
        if symbol in self.fail_candles:
            raise RuntimeError(f"candles unavailable for {symbol}")
        return list(self.candles.get((symbol, timeframe), []))[-limit:]

    def get_liquidity_ranking(self) -> List[str]:
        self.ranking_calls += 1
        if self.fail_ranking:
            raise RuntimeError("ticker unavailable")
        return list(self.ranking)

    def get_mark_price(self, symbol: str) -> float:
        if symbol in self.fail_price:
            raise RuntimeError(f"no price for {symbol}")
        return self.prices[symbol]

    def get_symbol_filters(self, symbol: str) -> SymbolFilters:
        return default_filters(symbol)


class FakeOrders:
    """OrderGateway that fills everything unless told otherwise."""

    def __init__(self, balance: float = 1000.0):
        self.balance = balance
        self.orders: List[Tuple[str, str, float, str]] = []
        self.closes: List[Tuple[str, float, str]] = []
        self.leverage: Dict[str, int] = {}
        self.fill_price: Optional[float] = None
        self.reject_orders = False
        self.raise_on_order = False
        self.reject_closes = False
        self.fail_leverage = False

    def get_available_balance(self) -> float:
        return self.balance

    def set_leverage(self, symbol: str, leverage: int) -> None:
        if self.fail_leverage:
            raise RuntimeError("leverage rejected")
        self.leverage[symbol] = leverage

    def place_market_order(self, symbol: str, side: str, quantity: float, position_side: str) -> OrderResult:
        if self.raise_on_order:
            raise ConnectionError("gateway down")
        self.orders.append((symbol, side, quantity, position_side))
        if self.reject_orders:
            return OrderResult(order_id=None, status="REJECTED", error="margin is insufficient")
        return OrderResult(
            order_id=f"o{len(self.orders)}",
            status="FILLED",
            executed_qty=quantity,
            avg_price=self.fill_price or 0.0,
        )

    def close_position(self, symbol: str, quantity: float, position_side: str) -> OrderResult:
        self.closes.append((symbol, quantity, position_side))
        if self.reject_closes:
            return OrderResult(order_id=None, status="EXPIRED")
        return OrderResult(order_id=f"c{len(self.closes)}", status="FILLED", executed_qty=quantity)
