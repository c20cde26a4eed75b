"""Pure position-management math used by the monitor loop."""
import math
from typing import Any, Iterable, Optional

from trading.execution_types import LONG, SHORT, direction, normalize_side

ROI_MARGIN = "margin"
ROI_PRICE = "price"


def _finite(value: Any) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value)


def price_move_pct(side: str, entry: float, mark: float) -> float:
    return (mark - entry) / entry * 100 * direction(side)


def compute_roi(
    side: str,
    entry: float,
    mark: float,
    leverage: float,
    unrealized_profit: Optional[float] = None,
    isolated_margin: Optional[float] = None,
    mode: str = ROI_MARGIN,
) -> float:
    """ROI in percent of margin.

    Margin mode uses the exchange's unrealized profit over isolated margin
    when both are usable, otherwise the price move scaled by leverage.
    """
    if (
        mode == ROI_MARGIN
        and _finite(unrealized_profit)
        and _finite(isolated_margin)
        and isolated_margin > 0
    ):
        return unrealized_profit / isolated_margin * 100
    return price_move_pct(side, entry, mark) * leverage


def resolve_leverage(*candidates: Any) -> float:
    for value in candidates:
        if _finite(value) and value > 0:
            return max(1.0, float(value))
    return 1.0


def compute_trailing_stop(side: str, entry: float, leverage: float, anchor: float, step: float) -> float:
    """Stop price locking in ``anchor - step`` ROI, never below break-even."""
    target_roi = max(0.0, anchor - step)
    move_pct = target_roi / max(1.0, leverage)
    return entry * (1 + direction(side) * move_pct / 100)


def is_tighter(side: str, new_stop: float, current_stop: Optional[float]) -> bool:
    if not _finite(current_stop) or current_stop <= 0:
        return True
    if normalize_side(side) == LONG:
        return new_stop > current_stop
    return new_stop < current_stop


def opposite_streak(biases: Iterable[str], side: str, count: int) -> bool:
    """True when the ``count`` newest biases all oppose ``side``."""
    if count <= 0:
        return False
    opposite = SHORT if normalize_side(side) == LONG else LONG
    recent = list(biases)[:count]
    return len(recent) == count and all(b == opposite for b in recent)


def dca_add_notional(position_size_usd: float, leverage: float, multiplier: float) -> float:
    """Notional of one add: the base margin times ``multiplier``, re-levered."""
    leverage = max(1.0, leverage)
    base_margin = position_size_usd / leverage
    return base_margin * (multiplier or 1.0) * leverage


def adds_count(position) -> int:
    if position.adds:
        return len(position.adds)
    return sum(1 for adj in position.adjustments if adj.type.value == "ADD")
