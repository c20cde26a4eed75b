"""Pure helpers for settling a position from exchange user trades."""
from typing import Any, Dict, List, Tuple

from ledger.models import Position, TakeProfit

TP_PRICE_TOLERANCE_PCT = 0.001
TP_PRICE_TOLERANCE_MIN = 2e-6


def _num(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def compute_final_from_trades(trades: List[Dict[str, Any]]) -> Dict[str, float]:
    """``finalPnl = sum(realizedPnl) - sum(commission)`` over the trades."""
    realized = sum(_num(t.get("realizedPnl")) for t in trades)
    fees = sum(_num(t.get("commission")) for t in trades)
    last_ts = max((int(t.get("time") or 0) for t in trades), default=0)
    return {
        "realized": round(realized, 8),
        "fees": round(fees, 8),
        "finalPnl": round(realized - fees, 8),
        "closedAt": last_ts,
    }


def _is_closing(position: Position, trade: Dict[str, Any]) -> bool:
    if "buyer" in trade:
        buyer = bool(trade.get("buyer"))
    else:
        buyer = str(trade.get("side", "")).upper() == "BUY"
    return not buyer if position.side == "LONG" else buyer


def _tolerance(price: float) -> float:
    return max(price * TP_PRICE_TOLERANCE_PCT, TP_PRICE_TOLERANCE_MIN)


def mark_tp_fills(position: Position, trades: List[Dict[str, Any]]) -> Tuple[List[TakeProfit], str]:
    """Flag take-profit levels reached by the closing trades.

    Returns the updated levels and a hint of what closed the position
    (``TP`` when at least half of the closed quantity printed at a filled
    level, ``SL`` when a stop was set, else ``AUTO``).
    """
    if position.take_profits:
        tps = [TakeProfit.from_dict(tp.to_dict()) for tp in position.take_profits]
    else:
        tps = [TakeProfit.from_dict(tp) for tp in position.initial_tps]
    tps = [tp for tp in tps if tp.price > 0 and tp.size_pct > 0]
    closing = [t for t in trades if _is_closing(position, t)]
    total_closed = sum(_num(t.get("qty")) for t in closing)
    if not tps or total_closed <= 0:
        return tps, "AUTO"

    is_long = position.side == "LONG"

    def reached(price: float, tp: TakeProfit) -> bool:
        if is_long:
            return price >= tp.price - _tolerance(tp.price)
        return price <= tp.price + _tolerance(tp.price)

    eligible = [0.0] * len(tps)
    for trade in closing:
        price = _num(trade.get("price"))
        qty = _num(trade.get("qty"))
        for idx, tp in enumerate(tps):
            if reached(price, tp):
                eligible[idx] += qty

    # farthest level first: a far fill is also eligible for every nearer level
    order = sorted(range(len(tps)), key=lambda i: tps[i].price, reverse=is_long)
    allocated = 0.0
    for idx in order:
        need = total_closed * tps[idx].size_pct / 100
        available = max(0.0, eligible[idx] - allocated)
        if need > 0 and available + 1e-12 >= need:
            allocated += need
            tps[idx].filled = True

    tp_closed = sum(
        _num(t.get("qty"))
        for t in closing
        if any(tp.filled and reached(_num(t.get("price")), tp) for tp in tps)
    )
    if tp_closed >= 0.5 * total_closed:
        hint = "TP"
    elif position.stop_price:
        hint = "SL"
    else:
        hint = "AUTO"
    return tps, hint
