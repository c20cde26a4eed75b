from typing import Iterable, Optional

from ledger.models import Position, TakeProfit, TpFill
from trading.execution_types import direction


def calc_fill_pnl(entry: Optional[float], fill: Optional[float], qty: Optional[float], side: str) -> float:
    """Signed PnL of one fill; 0 unless entry, fill price and qty are all positive."""
    if not entry or not fill or not qty or entry <= 0 or fill <= 0 or qty <= 0:
        return 0.0
    return (fill - entry) * qty * direction(side)


def sum_fills_qty(fills: Iterable[TpFill]) -> float:
    return sum(float(f.qty or 0) for f in fills)


def next_monotonic_cum(prev_cum: float, event_cum: float, delta: float, fills: Iterable[TpFill]) -> float:
    """Cumulative filled qty that never regresses below earlier cum or recorded fills."""
    prev = float(prev_cum or 0)
    candidate = event_cum if event_cum and event_cum > 0 else prev + max(0.0, delta or 0)
    return max(prev, candidate, sum_fills_qty(fills))


def tp_fill_pnl(level: TakeProfit, entry: float, side: str) -> float:
    return sum((f.price - entry) * f.qty * direction(side) for f in level.fills)


def sum_tp_realized_pnl(position: Position) -> float:
    return sum(tp_fill_pnl(tp, position.entry_price, position.side) for tp in position.take_profits)
