"""Exchange-filter quantization for order quantities and trigger prices."""
import math
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Optional

from trading.execution_types import LONG, SymbolFilters, normalize_side


def _decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        dec = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return dec if dec.is_finite() else None


def floor_to_step(value: float, step) -> float:
    """Floor ``value`` to a multiple of ``step``. A missing or zero step returns the value."""
    val = _decimal(value)
    stp = _decimal(step)
    if val is None:
        return 0.0
    if stp is None or stp <= 0:
        return float(val)
    units = (val / stp).to_integral_value(rounding=ROUND_FLOOR)
    return float(units * stp)


def adjust_quantity(filters: Optional[SymbolFilters], qty: float) -> float:
    """Floor ``qty`` to the lot step; below ``min_qty`` becomes 0."""
    if qty is None or not math.isfinite(qty) or qty <= 0:
        return 0.0
    if filters is None:
        return float(qty)
    step = filters.step_size_text or filters.step_size
    adjusted = floor_to_step(qty, step)
    if filters.min_qty and adjusted < filters.min_qty:
        return 0.0
    return adjusted if adjusted > 0 else 0.0


def adjust_price(filters: Optional[SymbolFilters], price: float) -> float:
    if price is None or not math.isfinite(price) or price <= 0:
        return 0.0
    if filters is None:
        return float(price)
    tick = filters.tick_size_text or filters.tick_size
    return floor_to_step(price, tick)


def validate_stop(side: str, entry_ref: float, current_ref: Optional[float], stop: float) -> bool:
    """A LONG stop sits below entry and mark; a SHORT stop sits above both."""
    if stop is None or not math.isfinite(stop) or stop <= 0:
        return False
    refs = [r for r in (entry_ref, current_ref) if r is not None and math.isfinite(r) and r > 0]
    if not refs:
        return False
    if normalize_side(side) == LONG:
        return all(stop < ref for ref in refs)
    return all(stop > ref for ref in refs)
