# trendscan/symbols/sizing.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict


def _d(x: Any) -> Decimal:
    return Decimal(str(x))


def _floor_to_step(x: Decimal, step: Decimal) -> Decimal:
    if step <= 0:
        return x
    return (x / step).to_integral_value(rounding=ROUND_DOWN) * step


def margin_for(balance_usdt: float, position_size_percent: float) -> float:
    """Margin committed to one entry: available balance x size percent."""
    if balance_usdt <= 0 or position_size_percent <= 0:
        return 0.0
    return float(_d(balance_usdt) * _d(position_size_percent) / _d(100))


@dataclass
class SizeResult:
    qty: float
    notional: float
    min_notional_required: float
    reason: str
    details: Dict[str, Any]

    @property
    def ok(self) -> bool:
        return self.reason == "ok"


def size_from_budget(
    *,
    symbol: str,
    price: float,
    usdt_margin: float,
    leverage: int,
    filters: Any,
    min_notional_override: float = 0.0,
) -> SizeResult:
    """
    Margin (USDT) -> order quantity.

    notional = margin * leverage, qty = notional / price floored to stepSize.
    The effective min notional is the larger of the exchange filter and the
    configured override.
    """
    px = _d(price)
    lev = max(1, int(leverage))
    budget = _d(usdt_margin)

    step = _d(getattr(filters, "step_size", "0"))
    min_qty = _d(getattr(filters, "min_qty", "0"))
    min_notional = max(
        _d(getattr(filters, "min_notional", "0")), _d(min_notional_override or 0.0)
    )

    base = {"symbol": symbol, "price": float(price), "usdt_margin": float(budget), "leverage": lev}

    if px <= 0:
        return SizeResult(0.0, 0.0, float(min_notional), "invalid_price", base)

    if budget <= 0:
        return SizeResult(0.0, 0.0, float(min_notional), "no_budget", base)

    target_notional = budget * _d(lev)
    raw_qty = target_notional / px
    qty_dec = _floor_to_step(raw_qty, step)

    if qty_dec <= 0 or (min_qty > 0 and qty_dec < min_qty):
        return SizeResult(
            qty=0.0,
            notional=0.0,
            min_notional_required=float(min_notional),
            reason="qty_below_min_qty",
            details={
                **base,
                "raw_qty": str(raw_qty),
                "qty_rounded": str(qty_dec),
                "min_qty": str(min_qty),
                "step_size": str(step),
            },
        )

    notional = qty_dec * px
    if min_notional > 0 and notional < min_notional:
        return SizeResult(
            qty=0.0,
            notional=float(notional),
            min_notional_required=float(min_notional),
            reason="below_min_notional",
            details={**base, "qty": str(qty_dec), "notional": float(notional)},
        )

    return SizeResult(
        qty=float(qty_dec),
        notional=float(notional),
        min_notional_required=float(min_notional),
        reason="ok",
        details={
            **base,
            "target_notional": float(target_notional),
            "raw_qty": str(raw_qty),
            "qty_rounded": str(qty_dec),
            "notional": float(notional),
            "step_size": str(step),
        },
    )
