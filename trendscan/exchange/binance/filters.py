from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Optional


@dataclass(frozen=True)
class SymbolFilters:
    symbol: str
    step_size: Decimal
    min_qty: Decimal
    tick_size: Decimal
    min_notional: Decimal = Decimal("0")


def _get_filter(symbol_info: dict, filter_type: str) -> Optional[dict]:
    for f in symbol_info.get("filters", []):
        if f.get("filterType") == filter_type:
            return f
    return None


def extract_filters(exchange_info: dict, symbol: str) -> SymbolFilters:
    """
    Pull LOT_SIZE / PRICE_FILTER / MIN_NOTIONAL for one symbol out of
    /fapi/v1/exchangeInfo.
    """
    symbol = symbol.upper()

    for s in exchange_info.get("symbols", []):
        if s.get("symbol") != symbol:
            continue

        lot = _get_filter(s, "LOT_SIZE")
        if not lot:
            raise ValueError(f"LOT_SIZE filter not found for {symbol}")

        price_filter = _get_filter(s, "PRICE_FILTER")
        if not price_filter:
            raise ValueError(f"PRICE_FILTER not found for {symbol}")

        # futures uses "notional", spot uses "minNotional"
        notional = _get_filter(s, "MIN_NOTIONAL") or {}
        min_notional = notional.get("notional") or notional.get("minNotional") or "0"

        return SymbolFilters(
            symbol=symbol,
            step_size=Decimal(lot["stepSize"]),
            min_qty=Decimal(lot["minQty"]),
            tick_size=Decimal(price_filter["tickSize"]),
            min_notional=Decimal(str(min_notional)),
        )

    raise ValueError(f"Symbol not found in exchangeInfo: {symbol}")


def _to_decimal(x) -> Decimal:
    return x if isinstance(x, Decimal) else Decimal(str(x))


def round_qty(qty: float, step_size) -> Decimal:
    """Round quantity DOWN to the nearest stepSize."""
    q = _to_decimal(qty)
    step = _to_decimal(step_size)
    if step <= 0:
        return q
    return (q / step).to_integral_value(rounding=ROUND_DOWN) * step


def round_price(px: float, tick_size) -> Decimal:
    """Round price DOWN to the nearest tickSize."""
    p = _to_decimal(px)
    tick = _to_decimal(tick_size)
    if tick <= 0:
        return p
    return (p / tick).to_integral_value(rounding=ROUND_DOWN) * tick
