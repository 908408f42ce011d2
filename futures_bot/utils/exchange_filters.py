"""Lot size, price and notional filter helpers from exchange info."""

from __future__ import annotations
import math
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class SymbolFilters:
    """Trading rules for one symbol."""
    min_qty: float = 0.001
    step_size: float = 0.001
    tick_size: float = 0.01
    min_notional: float = 5.0


def parse_symbol_filters(symbol_info: Optional[dict]) -> SymbolFilters:
    """
    Extract LOT_SIZE, PRICE_FILTER and MIN_NOTIONAL from a futures exchangeInfo
    symbol entry. Uses defaults if symbol_info is None.
    """
    if not symbol_info:
        return SymbolFilters()
    values = {}
    for f in symbol_info.get("filters", []):
        kind = f.get("filterType")
        if kind == "LOT_SIZE":
            values["min_qty"] = float(f["minQty"])
            values["step_size"] = float(f["stepSize"])
        elif kind == "PRICE_FILTER":
            values["tick_size"] = float(f["tickSize"])
        elif kind == "MIN_NOTIONAL":
            # futures uses "notional", spot uses "minNotional"
            values["min_notional"] = float(f.get("notional", f.get("minNotional")))
    return SymbolFilters(**values)


def _decimals(step: float) -> int:
    text = f"{step:.10f}".rstrip("0")
    return len(text.split(".")[1]) if "." in text else 0


def round_quantity(qty: float, min_qty: float, step_size: float) -> float:
    """Round down to step size; return 0 if below min_qty."""
    if qty <= 0:
        return 0.0
    # small epsilon so 0.3/0.001 style float error does not drop a whole step
    rounded = math.floor(qty / step_size + 1e-9) * step_size
    rounded = round(rounded, _decimals(step_size))
    if rounded < min_qty:
        return 0.0
    return rounded


def round_price(price: float, tick_size: float) -> float:
    """Round price to exchange tick."""
    return round(round(price / tick_size) * tick_size, _decimals(tick_size))
