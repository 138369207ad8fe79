from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, getcontext
from typing import Any, Dict, Tuple, Union

from libs.common.errors import PrecisionError

# précision suffisante pour éviter les artefacts binaires
getcontext().prec = 40

Number = Union[float, int, str, Decimal]


def _flt(filters, ftype):
    for f in filters:
        if f.get("filterType") == ftype:
            return f
    return None


def _dec(x: Number) -> Decimal:
    return x if isinstance(x, Decimal) else Decimal(str(x))


def decimals_from_step(step: Number) -> int:
    """'0.00100000' -> 3, '1.00000000' -> 0."""
    s = format(_dec(step).normalize(), "f")
    if "." not in s:
        return 0
    return len(s.split(".")[1].rstrip("0"))


def truncate(q: Number, d: int) -> Decimal:
    """Tronque (jamais d'arrondi supérieur) à d décimales."""
    if d < 0:
        raise ValueError("decimals must be >= 0")
    quantum = Decimal(1).scaleb(-d)
    return _dec(q).quantize(quantum, rounding=ROUND_DOWN)


def floor_to_step(value: Number, step: Number) -> Decimal:
    v, s = _dec(value), _dec(step)
    if s <= 0:
        return v
    return (v // s) * s


def fmt(d: Decimal) -> str:
    """Décimal fixe, sans notation scientifique."""
    s = format(d.normalize(), "f")
    return s if s else "0"


@dataclass(frozen=True)
class SymbolFilters:
    symbol: str
    tick_size: Decimal = Decimal("0.00000001")
    step_size: Decimal = Decimal("0.00000001")
    min_qty: Decimal = Decimal("0")
    min_notional: Decimal = Decimal("0")

    @property
    def price_decimals(self) -> int:
        return decimals_from_step(self.tick_size)

    @property
    def qty_decimals(self) -> int:
        return decimals_from_step(self.step_size)

    @classmethod
    def from_symbol_info(cls, info: Dict[str, Any]) -> "SymbolFilters":
        filters = info.get("filters", [])
        pf = _flt(filters, "PRICE_FILTER") or {}
        lot = _flt(filters, "LOT_SIZE") or _flt(filters, "MARKET_LOT_SIZE") or {}
        notional = _flt(filters, "NOTIONAL") or _flt(filters, "MIN_NOTIONAL") or {}
        tick = _dec(pf.get("tickSize") or "0.00000001")
        step = _dec(lot.get("stepSize") or "0.00000001")
        return cls(
            symbol=info["symbol"],
            tick_size=tick if tick > 0 else Decimal("0.00000001"),
            step_size=step if step > 0 else Decimal("0.00000001"),
            min_qty=_dec(lot.get("minQty") or "0"),
            min_notional=_dec(notional.get("minNotional") or "0"),
        )


def apply_rounding(price: Number, qty: Number, filters: SymbolFilters) -> Tuple[Decimal, Decimal]:
    """Prix et quantité ramenés vers le bas sur tickSize / stepSize."""
    p = truncate(floor_to_step(price, filters.tick_size), filters.price_decimals)
    q = truncate(floor_to_step(qty, filters.step_size), filters.qty_decimals)
    return p, q


def guard_order(price: Number, qty: Number, filters: SymbolFilters) -> Tuple[Decimal, Decimal]:
    """
    Arrondit vers le bas puis vérifie minQty / minNotional.
    `price` est le prix limite, ou le prix de référence pour un MARKET.
    Lève PrecisionError plutôt que de remonter la quantité.
    """
    p, q = apply_rounding(price, qty, filters)
    if p <= 0:
        raise PrecisionError(filters.symbol, "price below tick size", float(price), float(qty))
    if q <= 0 or q < filters.min_qty:
        raise PrecisionError(filters.symbol, f"qty {fmt(q)} below minQty {fmt(filters.min_qty)}", float(p), float(q))
    if p * q < filters.min_notional:
        raise PrecisionError(
            filters.symbol, f"notional {fmt(p * q)} below minNotional {fmt(filters.min_notional)}", float(p), float(q)
        )
    return p, q

